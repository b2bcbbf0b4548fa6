"""Unit tests for the pipeline executor."""

import asyncio

import pytest

from infra_orchestrator.core.errors import (
    CredentialError,
    DependencyCycle,
    DuplicateIdentifier,
    GateFailure,
    InvalidTransition,
    RunCancelled,
    RunSealed,
    UnknownDependency,
)
from infra_orchestrator.core.models import RunStatus, StageOutcome, StageStatus
from infra_orchestrator.pipeline import (
    ActionResult,
    GateDecision,
    PipelineExecutor,
    PipelineStage,
    output_pattern_gate,
)

CHAIN = ["compile", "scan", "test", "build", "containerize", "deploy"]


def passing(calls=None):
    def action(context):
        if calls is not None:
            calls.append(context.stage)
        return ActionResult(output=f"{context.stage} ok")

    return action


def failing(reason="gate failed"):
    def action(context):
        return ActionResult(exit_code=1, diagnostic=reason)

    return action


def chain_stages(overrides=None, calls=None):
    overrides = overrides or {}
    stages = []
    previous = None
    for name in CHAIN:
        stages.append(
            PipelineStage(
                name=name,
                action=overrides.get(name, passing(calls)),
                needs=[previous] if previous else [],
            )
        )
        previous = name
    return stages


class TestPipelineRun:
    """Stage ordering, gates and downstream skipping."""

    @pytest.fixture
    def executor(self):
        return PipelineExecutor(max_parallel=2)

    @pytest.mark.asyncio
    async def test_all_stages_pass(self, executor, trigger):
        calls = []

        run = await executor.run(chain_stages(calls=calls), trigger)

        assert run.status == RunStatus.PASSED
        assert calls == CHAIN
        assert run.completed == CHAIN
        assert all(run.outcome(n).status == StageStatus.PASSED for n in CHAIN)
        run.raise_for_status()

    @pytest.mark.asyncio
    async def test_scan_failure_skips_everything_downstream(self, executor, trigger):
        calls = []
        stages = chain_stages({"scan": failing("2 critical vulnerabilities")}, calls=calls)

        run = await executor.run(stages, trigger)

        assert run.status == RunStatus.FAILED
        assert run.outcome("compile").status == StageStatus.PASSED
        assert run.outcome("scan").status == StageStatus.FAILED
        assert run.outcome("scan").reason == "2 critical vulnerabilities"
        assert run.with_status(StageStatus.SKIPPED) == ["test", "build", "containerize", "deploy"]
        for name in ["test", "build", "containerize", "deploy"]:
            assert run.outcome(name).reason == "upstream failure: scan"
        assert calls == ["compile"]

    @pytest.mark.asyncio
    async def test_raise_for_status_reports_stage_and_reason(self, executor, trigger):
        run = await executor.run(chain_stages({"test": failing("3 tests failed")}), trigger)

        with pytest.raises(GateFailure) as exc:
            run.raise_for_status()

        assert exc.value.stage == "test"
        assert exc.value.reason == "3 tests failed"

    @pytest.mark.asyncio
    async def test_failure_only_skips_its_own_branch(self, executor, trigger):
        stages = [
            PipelineStage(name="a", action=passing()),
            PipelineStage(name="b", action=failing(), needs=["a"]),
            PipelineStage(name="c", action=passing(), needs=["a"]),
            PipelineStage(name="d", action=passing(), needs=["b", "c"]),
            PipelineStage(name="e", action=passing(), needs=["c"]),
        ]

        run = await executor.run(stages, trigger)

        assert run.status == RunStatus.FAILED
        assert run.outcome("c").status == StageStatus.PASSED
        assert run.outcome("e").status == StageStatus.PASSED
        assert run.outcome("d").status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_no_passed_stage_downstream_of_failure(self, executor, trigger):
        stages = [
            PipelineStage(name="root", action=passing()),
            PipelineStage(name="bad", action=failing(), needs=["root"]),
            PipelineStage(name="x", action=passing(), needs=["bad"]),
            PipelineStage(name="y", action=passing(), needs=["x", "root"]),
            PipelineStage(name="z", action=passing(), needs=["y"]),
        ]

        run = await executor.run(stages, trigger)

        for name in ["x", "y", "z"]:
            assert run.outcome(name).status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_exception_in_action_fails_gate(self, executor, trigger):
        def explode(context):
            raise RuntimeError("docker daemon unreachable")

        run = await executor.run(chain_stages({"containerize": explode}), trigger)

        outcome = run.outcome("containerize")
        assert outcome.status == StageStatus.FAILED
        assert "RuntimeError" in outcome.reason
        assert "docker daemon unreachable" in outcome.reason
        assert run.outcome("deploy").status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_custom_gate_evaluated_on_result(self, executor, trigger):
        stages = [
            PipelineStage(
                name="scan",
                action=lambda ctx: ActionResult(output="Total: 1 (CRITICAL: 1)"),
                gate=output_pattern_gate(r"CRITICAL: [1-9]", "critical findings"),
            ),
            PipelineStage(name="build", action=passing(), needs=["scan"]),
        ]

        run = await executor.run(stages, trigger)

        assert run.outcome("scan").status == StageStatus.FAILED
        assert run.outcome("scan").reason == "critical findings"
        assert run.outcome("build").status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_gate_that_raises_fails_stage(self, executor, trigger):
        def broken_gate(result):
            raise ValueError("bad gate")

        stages = [PipelineStage(name="only", action=passing(), gate=broken_gate)]

        run = await executor.run(stages, trigger)

        assert run.outcome("only").status == StageStatus.FAILED
        assert "bad gate" in run.outcome("only").reason

    @pytest.mark.asyncio
    async def test_timeout_fails_stage(self, executor, trigger):
        async def slow(context):
            await asyncio.sleep(5)
            return ActionResult()

        run = await executor.run([PipelineStage(name="slow", action=slow, timeout=0.05)], trigger)

        assert run.outcome("slow").status == StageStatus.FAILED
        assert "timed out" in run.outcome("slow").reason

    @pytest.mark.asyncio
    async def test_artifact_handed_to_downstream_stages(self, executor, trigger):
        seen = {}

        def deploy(context):
            seen.update(context.artifacts)
            return ActionResult()

        stages = [
            PipelineStage(
                name="containerize",
                action=passing(),
                produces="registry.local/app:{short_commit}",
            ),
            PipelineStage(name="deploy", action=deploy, needs=["containerize"]),
        ]

        run = await executor.run(stages, trigger)

        assert run.passed
        assert run.outcome("containerize").artifact == "registry.local/app:abc1234"
        assert seen == {"containerize": "registry.local/app:abc1234"}

    @pytest.mark.asyncio
    async def test_reporter_receives_every_outcome(self, trigger):
        reported = []
        executor = PipelineExecutor(reporter=lambda outcome: reported.append((outcome.name, outcome.status)))

        await executor.run(chain_stages({"build": failing()}), trigger)

        assert [name for name, _ in reported] == CHAIN
        assert dict(reported)["build"] == StageStatus.FAILED

    @pytest.mark.asyncio
    async def test_empty_pipeline_passes(self, executor, trigger):
        run = await executor.run([], trigger)

        assert run.passed

    def test_run_sync(self, trigger):
        run = PipelineExecutor().run_sync(chain_stages(), trigger)

        assert run.passed


class TestConcurrency:
    """Execution slots and parallel branches."""

    @staticmethod
    def diamond(b_action, c_action):
        return [
            PipelineStage(name="a", action=passing()),
            PipelineStage(name="b", action=b_action, needs=["a"]),
            PipelineStage(name="c", action=c_action, needs=["a"]),
            PipelineStage(name="d", action=passing(), needs=["b", "c"]),
        ]

    @pytest.mark.asyncio
    async def test_independent_stages_run_concurrently(self, trigger):
        c_started = asyncio.Event()

        async def b(context):
            await asyncio.wait_for(c_started.wait(), timeout=2)
            return ActionResult()

        async def c(context):
            c_started.set()
            return ActionResult()

        run = await PipelineExecutor(max_parallel=2).run(self.diamond(b, c), trigger)

        assert run.passed

    @pytest.mark.asyncio
    async def test_slots_bound_concurrency(self, trigger):
        running = 0
        peak = 0

        async def tracked(context):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return ActionResult()

        stages = [PipelineStage(name=f"job-{i}", action=tracked) for i in range(6)]

        run = await PipelineExecutor(max_parallel=2).run(stages, trigger)

        assert run.passed
        assert peak == 2

    @pytest.mark.asyncio
    async def test_downstream_waits_for_all_upstreams(self, trigger):
        async def slow(context):
            await asyncio.sleep(0.05)
            return ActionResult()

        async def fast(context):
            return ActionResult()

        run = await PipelineExecutor(max_parallel=4).run(self.diamond(slow, fast), trigger)

        assert run.passed
        assert run.completed == ["a", "c", "b", "d"]
        assert run.outcome("d").started_at >= run.outcome("b").finished_at

    def test_invalid_slot_count(self):
        with pytest.raises(ValueError):
            PipelineExecutor(max_parallel=0)


class TestCancellation:
    """Cancellation between stage boundaries."""

    @pytest.mark.asyncio
    async def test_cancel_skips_not_yet_started_stages(self, trigger):
        cancel = asyncio.Event()

        async def cancel_during_compile(context):
            cancel.set()
            return ActionResult()

        stages = chain_stages({"compile": cancel_during_compile})

        run = await PipelineExecutor().run(stages, trigger, cancel=cancel)

        assert run.cancelled
        assert run.status == RunStatus.FAILED
        assert run.outcome("compile").status == StageStatus.PASSED
        for name in CHAIN[1:]:
            assert run.outcome(name).status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_cancel_before_start_runs_nothing(self, trigger):
        cancel = asyncio.Event()
        cancel.set()
        calls = []

        run = await PipelineExecutor().run(chain_stages(calls=calls), trigger, cancel=cancel)

        assert calls == []
        assert run.with_status(StageStatus.SKIPPED) == CHAIN

    @pytest.mark.asyncio
    async def test_cancelled_run_raises_for_status(self, trigger):
        cancel = asyncio.Event()
        cancel.set()

        run = await PipelineExecutor().run(chain_stages(), trigger, cancel=cancel)

        assert run.failures() == []
        with pytest.raises(RunCancelled, match=run.run_id):
            run.raise_for_status()


class TestValidation:
    """Checks performed before any stage runs."""

    @pytest.mark.asyncio
    async def test_cycle_rejected(self, trigger):
        calls = []
        stages = [
            PipelineStage(name="a", action=passing(calls), needs=["b"]),
            PipelineStage(name="b", action=passing(calls), needs=["a"]),
            PipelineStage(name="c", action=passing(calls)),
        ]

        with pytest.raises(DependencyCycle):
            await PipelineExecutor().run(stages, trigger)
        assert calls == []

    @pytest.mark.asyncio
    async def test_unknown_upstream_rejected(self, trigger):
        with pytest.raises(UnknownDependency):
            await PipelineExecutor().run([PipelineStage(name="a", action=passing(), needs=["ghost"])], trigger)

    @pytest.mark.asyncio
    async def test_duplicate_stage_rejected(self, trigger):
        stages = [PipelineStage(name="a", action=passing()), PipelineStage(name="a", action=passing())]

        with pytest.raises(DuplicateIdentifier):
            await PipelineExecutor().run(stages, trigger)

    @pytest.mark.asyncio
    async def test_missing_credentials_rejected_before_any_stage(self, trigger):
        calls = []
        trigger.credentials.registry_token = ""
        stages = chain_stages(calls=calls)
        stages[4].requires = ["registry_token"]
        stages[5].requires = ["cloud_access_key_id", "kubeconfig"]

        with pytest.raises(CredentialError) as exc:
            await PipelineExecutor().run(stages, trigger)

        assert exc.value.missing == {"containerize": ["registry_token"], "deploy": ["kubeconfig"]}
        assert calls == []

    @pytest.mark.asyncio
    async def test_extra_credentials_satisfy_requirements(self, trigger):
        trigger.credentials.extra["kubeconfig"] = "apiVersion: v1"
        stages = [PipelineStage(name="deploy", action=passing(), requires=["kubeconfig"])]

        run = await PipelineExecutor().run(stages, trigger)

        assert run.passed


class TestRecords:
    """Stage state machine and run sealing."""

    def test_stage_cannot_skip_running(self):
        outcome = StageOutcome(name="build")

        with pytest.raises(InvalidTransition):
            outcome.transition(StageStatus.PASSED)

    def test_stage_never_returns_to_pending(self):
        outcome = StageOutcome(name="build")
        outcome.transition(StageStatus.RUNNING)
        outcome.transition(StageStatus.FAILED, "boom")

        with pytest.raises(InvalidTransition):
            outcome.transition(StageStatus.RUNNING)
        assert outcome.reason == "boom"

    @pytest.mark.asyncio
    async def test_finished_run_is_sealed(self, trigger):
        run = await PipelineExecutor().run(chain_stages(), trigger)

        with pytest.raises(RunSealed):
            run.record("deploy", StageStatus.FAILED, reason="late")
        with pytest.raises(RunSealed):
            run.finish()

    def test_gate_decision_defaults(self):
        assert GateDecision(passed=True).reason == ""
