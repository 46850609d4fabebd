"""Schema package exports."""

from .jobs import OrchestratorJob

__all__ = ["OrchestratorJob"]
