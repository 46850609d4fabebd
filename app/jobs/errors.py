"""Exception types raised by the orchestrator domain."""

from __future__ import annotations


class OrchestratorError(Exception):
  """Base class for orchestrator failures."""


class InvalidTransitionError(OrchestratorError, ValueError):
  """Raised when an entity is asked to move along an edge its lifecycle does not allow."""

  def __init__(self, action: str, status: str) -> None:
    super().__init__(f"Cannot {action} an entity in status '{status}'.")
    self.action = action
    self.status = status


class InvalidOptionsError(OrchestratorError, ValueError):
  """Raised when caller-supplied job options cannot be resolved into a config."""


class LeaseLostError(OrchestratorError):
  """Raised when a tick tries to persist after its lease passed to another worker."""


class DiscoveryError(OrchestratorError):
  """Raised when the entity listing of a target cannot be read."""


class IntakeRejectedError(OrchestratorError):
  """Raised when an intake request is refused before any job is created."""

  def __init__(self, status_code: int, error: str, *, retry_after: int | None = None) -> None:
    super().__init__(error)
    self.status_code = status_code
    self.error = error
    self.retry_after = retry_after
