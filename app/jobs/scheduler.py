"""Pick the work for one tick under a concurrency budget."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from app.jobs.models import IN_FLIGHT_ENTITY_STATUSES, EntityState


@dataclass(frozen=True)
class TickPlan:
  to_dispatch: tuple[str, ...]
  to_poll: tuple[str, ...]

  @property
  def is_empty(self) -> bool:
    return not self.to_dispatch and not self.to_poll


def plan_tick(entities: Mapping[str, EntityState], concurrency: int) -> TickPlan:
  """Select pending entities to dispatch and in-flight entities to poll.

  Dispatch fills only the free slots (``concurrency`` minus in-flight).
  Every in-flight entity is polled regardless of the budget. Both lists keep
  the entity map's insertion order.
  """
  to_poll = tuple(entity_id for entity_id, entity in entities.items() if entity.status in IN_FLIGHT_ENTITY_STATUSES)
  free_slots = max(concurrency - len(to_poll), 0)
  to_dispatch: list[str] = []
  if free_slots:
    for entity_id, entity in entities.items():
      if entity.status != "pending":
        continue
      to_dispatch.append(entity_id)
      if len(to_dispatch) >= free_slots:
        break
  return TickPlan(to_dispatch=tuple(to_dispatch), to_poll=to_poll)
