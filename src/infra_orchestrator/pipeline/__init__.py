"""Pipeline Executor - runs gated build stages in dependency order."""

from infra_orchestrator.pipeline.executor import PipelineExecutor, check_credentials, validate_stages
from infra_orchestrator.pipeline.stage import (
    ActionResult,
    GateDecision,
    PipelineStage,
    StageContext,
    exit_code_gate,
    output_pattern_gate,
)

__all__ = [
    "ActionResult",
    "GateDecision",
    "PipelineExecutor",
    "PipelineStage",
    "StageContext",
    "check_credentials",
    "exit_code_gate",
    "output_pattern_gate",
    "validate_stages",
]
