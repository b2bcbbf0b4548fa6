"""Infrastructure Orchestrator - resource graph planning and gated build pipelines."""

__version__ = "0.1.0"
