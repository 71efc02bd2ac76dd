from __future__ import annotations

from enum import Enum

from services.errors import ConflictError


class IntakeStatus(str, Enum):
    FOR_CONFIRMATION = "for_confirmation"
    PENDING_CALIBRATION = "pending_calibration"
    COMPLETED = "completed"


class CompletionStatus(str, Enum):
    FOR_PICKUP = "for_pickup"
    COMPLETED = "completed"


INTAKE_TRANSITIONS: dict[IntakeStatus, set[IntakeStatus]] = {
    IntakeStatus.FOR_CONFIRMATION: {IntakeStatus.PENDING_CALIBRATION},
    IntakeStatus.PENDING_CALIBRATION: {IntakeStatus.COMPLETED},
    IntakeStatus.COMPLETED: set(),
}
COMPLETION_TRANSITIONS: dict[CompletionStatus, set[CompletionStatus]] = {
    CompletionStatus.FOR_PICKUP: {CompletionStatus.COMPLETED},
    CompletionStatus.COMPLETED: set(),
}

# Canonical buckets shared by every read and write path.
OPEN_INTAKE_STATUSES = frozenset({IntakeStatus.FOR_CONFIRMATION, IntakeStatus.PENDING_CALIBRATION})
CLOSED_INTAKE_STATUSES = frozenset({IntakeStatus.COMPLETED})


def parse_intake_status(raw: str | None) -> IntakeStatus:
    try:
        return IntakeStatus((raw or "").strip())
    except ValueError as exc:
        raise ConflictError(f"Unknown intake status: {raw}") from exc


def parse_completion_status(raw: str | None) -> CompletionStatus:
    try:
        return CompletionStatus((raw or "").strip())
    except ValueError as exc:
        raise ConflictError(f"Unknown completion status: {raw}") from exc


def can_transition_intake(current: IntakeStatus, target: IntakeStatus) -> bool:
    return target in INTAKE_TRANSITIONS.get(current, set())


def can_transition_completion(current: CompletionStatus, target: CompletionStatus) -> bool:
    return target in COMPLETION_TRANSITIONS.get(current, set())


def ensure_intake_transition(raw_current: str | None, target: IntakeStatus) -> IntakeStatus:
    current = parse_intake_status(raw_current)
    if not can_transition_intake(current, target):
        raise ConflictError(f"Invalid intake transition: {current.value} -> {target.value}")
    return target



def ensure_completion_transition(raw_current: str | None, target: CompletionStatus) -> CompletionStatus:
    current = parse_completion_status(raw_current)
    if not can_transition_completion(current, target):
        raise ConflictError(f"Invalid completion transition: {current.value} -> {target.value}")
    return target
