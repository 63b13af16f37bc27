from __future__ import annotations

import enum


class WorkflowPhase(str, enum.Enum):
    NONE = "none"
    PLAN_CREATED = "plan_created"
    PACKING_SET = "packing_set"
    PLACEMENT_CONFIRMED = "placement_confirmed"
    TRANSPORT_CONFIRMED = "transport_confirmed"


class WorkflowEvent(str, enum.Enum):
    PLAN_CREATED = "plan_created"
    PACKING_SET = "packing_set"
    PLACEMENT_CONFIRMED = "placement_confirmed"
    TRANSPORT_CONFIRMED = "transport_confirmed"


PHASE_ORDER: tuple[WorkflowPhase, ...] = (
    WorkflowPhase.NONE,
    WorkflowPhase.PLAN_CREATED,
    WorkflowPhase.PACKING_SET,
    WorkflowPhase.PLACEMENT_CONFIRMED,
    WorkflowPhase.TRANSPORT_CONFIRMED,
)

_EVENT_TARGET = {
    WorkflowEvent.PLAN_CREATED: WorkflowPhase.PLAN_CREATED,
    WorkflowEvent.PACKING_SET: WorkflowPhase.PACKING_SET,
    WorkflowEvent.PLACEMENT_CONFIRMED: WorkflowPhase.PLACEMENT_CONFIRMED,
    WorkflowEvent.TRANSPORT_CONFIRMED: WorkflowPhase.TRANSPORT_CONFIRMED,
}


class InvalidTransition(ValueError):
    pass


def parse_phase(value: str | WorkflowPhase | None) -> WorkflowPhase:
    if isinstance(value, WorkflowPhase):
        return value
    raw = (value or "").strip().lower()
    if not raw:
        return WorkflowPhase.NONE
    try:
        return WorkflowPhase(raw)
    except ValueError as exc:
        raise InvalidTransition(f"Unknown workflow phase '{value}'.") from exc


def phase_rank(phase: str | WorkflowPhase | None) -> int:
    return PHASE_ORDER.index(parse_phase(phase))


def has_reached(current: str | WorkflowPhase | None, target: WorkflowPhase) -> bool:
    return phase_rank(current) >= phase_rank(target)


def next_phase(current: str | WorkflowPhase | None, event: WorkflowEvent) -> WorkflowPhase:
    """
    Pure transition function for the phase marker.

    Replaying an event at or behind the current marker is a no-op (re-entrant
    runs); an event that would skip a phase is rejected.
    """
    current_phase = parse_phase(current)
    target = _EVENT_TARGET[event]
    current_rank = PHASE_ORDER.index(current_phase)
    target_rank = PHASE_ORDER.index(target)
    if target_rank <= current_rank:
        return current_phase
    if target_rank != current_rank + 1:
        raise InvalidTransition(
            f"Cannot apply '{event.value}' while the workflow is at '{current_phase.value}'."
        )
    return target
