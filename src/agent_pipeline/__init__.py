"""Agent job execution pipeline with human approval checkpoints."""

__version__ = "0.1.0"
