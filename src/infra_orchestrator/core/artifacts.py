"""Artifact persistence for pipeline traceability.

This module persists run records and plans next to the repository for:
- Audit trail of what each trigger executed
- Traceability between a commit and the infrastructure it converged
- Operator-readable summaries
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from infra_orchestrator.core.models import ApplyResult, Operation, PipelineRun, StageStatus


class ArtifactManager:
    """Manages run and plan artifact persistence."""

    def __init__(self, artifacts_dir: Path):
        """Initialize the artifact manager.

        Args:
            artifacts_dir: Root directory; runs are stored under ``runs/<run_id>``
        """
        self._artifacts_dir = Path(artifacts_dir)
        self._runs_dir = self._artifacts_dir / "runs"

    def get_run_dir(self, run_id: str) -> Path:
        """Get the directory for a specific run's artifacts."""
        return self._runs_dir / run_id

    def ensure_run_dir(self, run_id: str) -> Path:
        """Create and return the run artifacts directory."""
        run_dir = self.get_run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def save_run(self, run: PipelineRun) -> Path:
        """Save a pipeline run as run.yaml.

        Credentials are never written; the trigger model excludes them.

        Returns:
            Path to the saved file
        """
        run_dir = self.ensure_run_dir(run.run_id)
        file_path = run_dir / "run.yaml"
        data = run.model_dump(mode="json")
        self._write_yaml(file_path, data, header=f"# Pipeline run: {run.run_id}")
        return file_path

    def save_plan(self, run_id: str, operations: list[Operation], result: Optional[ApplyResult] = None) -> Path:
        """Save planned operations, and their results when applied, as plan.yaml."""
        run_dir = self.ensure_run_dir(run_id)
        file_path = run_dir / "plan.yaml"

        statuses = {}
        if result is not None:
            statuses = {r.operation.key: (r.status.value, r.error) for r in result.results}

        data: dict[str, Any] = {
            "generated": datetime.utcnow().isoformat() + "Z",
            "operations": [
                {
                    "type": op.type.value,
                    "resource_id": op.resource_id,
                    "resource_type": op.resource_type.value,
                    "changed_fields": op.changed_fields,
                    "status": statuses.get(op.key, ("planned", None))[0],
                    "error": statuses.get(op.key, ("planned", None))[1],
                }
                for op in operations
            ],
        }
        self._write_yaml(file_path, data, header=f"# Plan for: {run_id}")
        return file_path

    def load_run(self, run_id: str) -> Optional[PipelineRun]:
        """Load a saved run, or None if it does not exist."""
        file_path = self.get_run_dir(run_id) / "run.yaml"
        if not file_path.exists():
            return None
        return PipelineRun.model_validate(self._read_yaml(file_path))

    def list_runs(self) -> list[str]:
        """List saved run ids, most recent first."""
        if not self._runs_dir.exists():
            return []
        runs = [d for d in self._runs_dir.iterdir() if (d / "run.yaml").exists()]
        runs.sort(key=lambda d: (d / "run.yaml").stat().st_mtime, reverse=True)
        return [d.name for d in runs]

    def generate_summary(self, run: PipelineRun) -> Path:
        """Write a markdown summary of a run as summary.md."""
        run_dir = self.ensure_run_dir(run.run_id)
        summary_path = run_dir / "summary.md"

        status_icon = "✅" if run.passed else "❌"
        lines = [
            f"# Pipeline Run: {run.run_id}",
            "",
            f"**Status:** {status_icon} {run.status.value.upper()}",
            f"**Branch:** {run.trigger.branch}",
            f"**Commit:** `{run.trigger.commit}`",
            f"**Started:** {run.created_at.isoformat()}Z",
            "",
            "## Stages",
            "",
            "| Stage | Status | Duration | Notes |",
            "|-------|--------|----------|-------|",
        ]

        icons = {
            StageStatus.PASSED: "✅",
            StageStatus.FAILED: "❌",
            StageStatus.SKIPPED: "⏭️",
            StageStatus.PENDING: "⏳",
            StageStatus.RUNNING: "🔄",
        }
        for name, outcome in run.stages.items():
            notes = outcome.reason or outcome.artifact or ""
            lines.append(
                f"| {name} | {icons[outcome.status]} {outcome.status.value} "
                f"| {outcome.duration_seconds:.1f}s | {notes[:80]} |"
            )
        lines.append("")

        failures = run.failures()
        if failures:
            lines.append("## Gate Failures")
            lines.append("")
            for failure in failures:
                lines.append(f"- **{failure.stage}**: {failure.reason}")
            lines.append("")

        lines.extend([
            "---",
            "",
            "*Generated by infra-orchestrator*",
        ])

        summary_path.write_text("\n".join(lines))
        return summary_path

    def _write_yaml(self, path: Path, data: dict[str, Any], header: str = "") -> None:
        """Write data to YAML file with optional header comment."""
        content = ""
        if header:
            content = header + "\n\n"

        yaml_content = yaml.dump(
            data,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
            width=120,
        )
        content += yaml_content
        path.write_text(content)

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        """Read YAML file and return data."""
        content = path.read_text()
        return yaml.safe_load(content) or {}
