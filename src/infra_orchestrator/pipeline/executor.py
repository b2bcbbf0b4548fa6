"""Pipeline executor - runs a graph of gated stages for one trigger.

Stages start as soon as every upstream stage has passed, bounded by a fixed
number of execution slots. A failed gate fails its stage and skips every
stage downstream of it; the run fails. Cancellation is honoured only between
stage boundaries: stages already running finish, stages not yet started are
skipped.

Stage states:

    pending ──► running ──► passed
       │           └──────► failed
       └──► skipped
"""

import asyncio
import inspect
import logging
from typing import Callable, Optional

from infra_orchestrator.core.errors import (
    CredentialError,
    DuplicateIdentifier,
    GateFailure,
)
from infra_orchestrator.core.graph import downstream_of, topological_order
from infra_orchestrator.core.models import (
    PipelineRun,
    StageOutcome,
    StageStatus,
    Trigger,
)
from infra_orchestrator.pipeline.stage import (
    ActionResult,
    GateDecision,
    PipelineStage,
    StageContext,
)

logger = logging.getLogger(__name__)

# Receives each stage outcome as soon as it is recorded
StageReporter = Callable[[StageOutcome], None]

_CANCELLED = "cancelled before start"


def validate_stages(stages: list[PipelineStage]) -> list[str]:
    """Check the stage graph and return stage names in execution order.

    Raises:
        DuplicateIdentifier: Two stages share a name
        UnknownDependency: A stage needs a stage that does not exist
        DependencyCycle: The stage graph is not acyclic
    """
    seen: set[str] = set()
    for stage in stages:
        if stage.name in seen:
            raise DuplicateIdentifier(stage.name)
        seen.add(stage.name)
    return topological_order({stage.name: stage.needs for stage in stages})


def check_credentials(stages: list[PipelineStage], trigger: Trigger) -> None:
    """Raise CredentialError if any stage's required credentials are missing."""
    missing = {}
    for stage in stages:
        absent = trigger.credentials.missing(stage.requires)
        if absent:
            missing[stage.name] = absent
    if missing:
        raise CredentialError(missing)


async def _invoke(stage: PipelineStage, context: StageContext) -> ActionResult:
    action = stage.action
    if inspect.iscoroutinefunction(action) or inspect.iscoroutinefunction(getattr(action, "__call__", None)):
        result = await action(context)
    else:
        result = await asyncio.to_thread(action, context)
        if inspect.isawaitable(result):
            result = await result
    return result or ActionResult()


class PipelineExecutor:
    """Executes stage graphs, one PipelineRun per trigger."""

    def __init__(self, max_parallel: int = 2, reporter: Optional[StageReporter] = None):
        """
        Initialize the executor.

        Args:
            max_parallel: Number of stages allowed to run at the same time
            reporter: Optional callback receiving every recorded stage outcome
        """
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.max_parallel = max_parallel
        self.reporter = reporter

    def _report(self, outcome: StageOutcome) -> None:
        if self.reporter is not None:
            self.reporter(outcome)

    async def _run_stage(
        self,
        stage: PipelineStage,
        run: PipelineRun,
        artifacts: dict[str, str],
        slots: asyncio.Semaphore,
        cancel: Optional[asyncio.Event],
    ) -> tuple[GateDecision, Optional[ActionResult]]:
        async with slots:
            if cancel is not None and cancel.is_set():
                return GateDecision(passed=False, reason=_CANCELLED), None

            run.mark_running(stage.name)
            logger.info(f"Stage '{stage.name}' started")
            context = StageContext(stage=stage.name, trigger=run.trigger, artifacts=dict(artifacts))

            try:
                if stage.timeout is not None:
                    result = await asyncio.wait_for(_invoke(stage, context), timeout=stage.timeout)
                else:
                    result = await _invoke(stage, context)
            except asyncio.TimeoutError:
                return GateDecision(passed=False, reason=f"timed out after {stage.timeout}s"), None
            except Exception as e:
                logger.error(f"Stage '{stage.name}' action raised {type(e).__name__}: {e}")
                return GateDecision(passed=False, reason=f"{type(e).__name__}: {e}"), None

            if result.artifact is None and stage.produces:
                result.artifact = context.render(stage.produces)

            try:
                decision = stage.gate(result)
            except Exception as e:
                logger.error(f"Stage '{stage.name}' gate raised {type(e).__name__}: {e}")
                decision = GateDecision(passed=False, reason=f"gate error: {e}")
            return decision, result

    def _skip(self, run: PipelineRun, names: list[str], reason: str, started: set[str]) -> None:
        for name in names:
            if name in started or run.outcome(name).status != StageStatus.PENDING:
                continue
            self._report(run.record(name, StageStatus.SKIPPED, reason=reason))
            logger.info(f"Stage '{name}' skipped: {reason}")

    async def run(
        self,
        stages: list[PipelineStage],
        trigger: Trigger,
        cancel: Optional[asyncio.Event] = None,
    ) -> PipelineRun:
        """
        Execute ``stages`` for ``trigger``.

        Graph and credential problems raise before any stage starts. Gate
        failures do not raise; they are recorded in the returned run (see
        PipelineRun.raise_for_status).

        Args:
            stages: Stage definitions
            trigger: Change event with its credential bundle
            cancel: Set to stop starting new stages

        Returns:
            The sealed PipelineRun

        Raises:
            GraphError: Malformed stage graph
            CredentialError: Missing credentials
        """
        order = validate_stages(stages)
        check_credentials(stages, trigger)

        by_name = {stage.name: stage for stage in stages}
        needs = {stage.name: list(stage.needs) for stage in stages}
        run = PipelineRun.start(trigger, order)
        slots = asyncio.Semaphore(self.max_parallel)
        artifacts: dict[str, str] = {}
        tasks: dict[asyncio.Task, str] = {}
        started: set[str] = set()

        logger.info(
            f"Pipeline {run.run_id} triggered by {trigger.branch}@{trigger.short_commit} "
            f"({len(order)} stages)"
        )

        while True:
            if cancel is not None and cancel.is_set() and not run.cancelled:
                run.cancelled = True
                logger.warning(f"Pipeline {run.run_id} cancelled")
                self._skip(run, order, _CANCELLED, started)

            if not run.cancelled:
                for name in order:
                    if name in started or run.outcome(name).status != StageStatus.PENDING:
                        continue
                    if all(run.outcome(dep).status == StageStatus.PASSED for dep in needs[name]):
                        started.add(name)
                        task = asyncio.create_task(
                            self._run_stage(by_name[name], run, artifacts, slots, cancel)
                        )
                        tasks[task] = name

            if not tasks:
                break

            done, _ = await asyncio.wait(set(tasks), return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: tasks[t]):
                name = tasks.pop(task)
                decision, result = task.result()
                outcome = run.outcome(name)

                if outcome.status == StageStatus.PENDING:
                    # Never acquired a slot before cancellation
                    self._report(run.record(name, StageStatus.SKIPPED, reason=decision.reason))
                    continue

                diagnostic = ""
                artifact = None
                if result is not None:
                    diagnostic = result.diagnostic or result.output[-2000:]
                    artifact = result.artifact

                if decision.passed:
                    self._report(run.record(name, StageStatus.PASSED, diagnostic=diagnostic, artifact=artifact))
                    if artifact:
                        artifacts[name] = artifact
                    logger.info(f"Stage '{name}' passed")
                else:
                    failure = GateFailure(name, decision.reason)
                    self._report(
                        run.record(name, StageStatus.FAILED, reason=failure.reason, diagnostic=diagnostic)
                    )
                    logger.error(str(failure))
                    self._skip(
                        run,
                        [n for n in order if n in downstream_of(needs, name)],
                        f"upstream failure: {name}",
                        started,
                    )

        # Stages still pending could not start because an upstream never passed
        self._skip(run, order, "not started", started)
        run.finish()
        logger.info(f"Pipeline {run.run_id} {run.status.value}")
        return run

    def run_sync(
        self,
        stages: list[PipelineStage],
        trigger: Trigger,
    ) -> PipelineRun:
        """Synchronous wrapper around run()."""
        return asyncio.run(self.run(stages, trigger))
