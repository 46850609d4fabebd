from __future__ import annotations

from typing import Protocol


class TaskEnqueuer(Protocol):
  """Interface for scheduling ticks back into this service."""

  async def enqueue_tick(self, job_id: str, delay_seconds: float = 0.0) -> None:
    """Schedule one controller tick for ``job_id`` after ``delay_seconds``."""
    ...

  async def enqueue_sweep(self) -> None:
    """Schedule one recovery sweep."""
    ...
