"""Concord — automation reconciliation engine with durable run tracking."""

__version__ = "0.1.0"

from concord.engine.coordinator import RunCoordinator, RunHandle, RunResult
from concord.engine.errors import RunAlreadyActive

__all__ = ["RunCoordinator", "RunHandle", "RunResult", "RunAlreadyActive", "__version__"]
