"""Overdue and due-soon rules for intake and completion records.

The predicates are pure and take ``today`` explicitly. The query helpers are
read-only and run without row locks; their results are advisory.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.tracking_models import Employee, TrackIncoming, TrackOutgoing
from services.status import CLOSED_INTAKE_STATUSES, OPEN_INTAKE_STATUSES, CompletionStatus, IntakeStatus


DEFAULT_DUE_SOON_DAYS = 7

_YES_TOKENS = {"1", "yes", "y", "true"}
_NO_TOKENS = {"0", "no", "n", "false"}


def normalize_overdue_flag(value: Any) -> int:
    """Map 0/1, booleans and yes/no tokens onto the stored 0/1 flag."""
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int):
        if value in (0, 1):
            return value
        raise ValueError("overdue must be 0, 1, 'yes' or 'no'.")
    token = str(value).strip().lower()
    if token in _YES_TOKENS:
        return 1
    if token in _NO_TOKENS:
        return 0
    raise ValueError("overdue must be 0, 1, 'yes' or 'no'.")


def derive_overdue(ct_reqd: int | None, cycle_time: int | None, explicit: Any = None) -> int:
    if explicit is not None:
        return normalize_overdue_flag(explicit)
    if ct_reqd is None or cycle_time is None:
        return 0
    return 1 if int(ct_reqd) < int(cycle_time) else 0


def is_intake_overdue(intake: TrackIncoming, today: date) -> bool:
    if intake.DueDate is None:
        return False
    return intake.DueDate < today and intake.Status not in {status.value for status in CLOSED_INTAKE_STATUSES}


def is_due_soon(completion: TrackOutgoing, today: date, days: int = DEFAULT_DUE_SOON_DAYS) -> bool:
    if completion.CalDueDate is None:
        return False
    return today <= completion.CalDueDate <= today + timedelta(days=max(days, 0))


def is_due_for_recalibration(completion: TrackOutgoing, today: date) -> bool:
    if completion.CalDueDate is None:
        return False
    return completion.Status == CompletionStatus.COMPLETED.value and completion.CalDueDate <= today


def _incoming_options():
    return (
        selectinload(TrackIncoming.Technician),
        selectinload(TrackIncoming.Location),
        selectinload(TrackIncoming.EmployeeIn),
        selectinload(TrackIncoming.ReceivedBy),
        selectinload(TrackIncoming.Equipment),
        selectinload(TrackIncoming.Completion),
    )


def _outgoing_options():
    return (
        selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Technician),
        selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Location),
        selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.EmployeeIn),
        selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Equipment),
        selectinload(TrackOutgoing.EmployeeOut),
        selectinload(TrackOutgoing.ReleasedBy),
    )


def scope_outgoing_to_department(stmt, department_id: int | None):
    if department_id is None:
        return stmt
    return (
        stmt.join(TrackIncoming, TrackIncoming.IncomingID == TrackOutgoing.IncomingID)
        .join(Employee, Employee.EmployeeID == TrackIncoming.EmployeeIDIn)
        .where(Employee.DepartmentID == department_id)
    )


def overdue_intakes_stmt(today: date):
    open_values = [status.value for status in OPEN_INTAKE_STATUSES]
    return (
        select(TrackIncoming)
        .options(*_incoming_options())
        .where(TrackIncoming.ArchivedAt.is_(None))
        .where(TrackIncoming.DueDate < today)
        .where(TrackIncoming.Status.in_(open_values))
        .order_by(TrackIncoming.DueDate.asc(), TrackIncoming.IncomingID.asc())
    )


def due_soon_stmt(today: date, days: int = DEFAULT_DUE_SOON_DAYS, department_id: int | None = None):
    window_end = today + timedelta(days=max(days, 0))
    stmt = (
        select(TrackOutgoing)
        .options(*_outgoing_options())
        .where(TrackOutgoing.ArchivedAt.is_(None))
        .where(TrackOutgoing.CalDueDate >= today)
        .where(TrackOutgoing.CalDueDate <= window_end)
        .order_by(TrackOutgoing.CalDueDate.asc(), TrackOutgoing.OutgoingID.asc())
    )
    return scope_outgoing_to_department(stmt, department_id)


def due_for_recalibration_stmt(today: date, department_id: int | None = None):
    stmt = (
        select(TrackOutgoing)
        .options(*_outgoing_options())
        .where(TrackOutgoing.ArchivedAt.is_(None))
        .where(TrackOutgoing.Status == CompletionStatus.COMPLETED.value)
        .where(TrackOutgoing.CalDueDate <= today)
        .order_by(TrackOutgoing.CalDueDate.asc(), TrackOutgoing.OutgoingID.asc())
    )
    return scope_outgoing_to_department(stmt, department_id)


def query_overdue_intakes(db: Session, today: date) -> list[TrackIncoming]:
    return list(db.execute(overdue_intakes_stmt(today)).scalars().all())


def query_due_soon_completions(
    db: Session,
    today: date,
    days: int = DEFAULT_DUE_SOON_DAYS,
    department_id: int | None = None,
) -> list[TrackOutgoing]:
    return list(db.execute(due_soon_stmt(today, days, department_id)).scalars().all())


def query_due_for_recalibration(db: Session, today: date, department_id: int | None = None) -> list[TrackOutgoing]:
    return list(db.execute(due_for_recalibration_stmt(today, department_id)).scalars().all())


def status_summary(db: Session, today: date) -> dict:
    intake_counts = {status.value: 0 for status in IntakeStatus}
    for raw_status, count in db.execute(
        select(TrackIncoming.Status, func.count(TrackIncoming.IncomingID))
        .where(TrackIncoming.ArchivedAt.is_(None))
        .group_by(TrackIncoming.Status)
    ).all():
        intake_counts[str(raw_status)] = int(count or 0)

    completion_counts = {status.value: 0 for status in CompletionStatus}
    for raw_status, count in db.execute(
        select(TrackOutgoing.Status, func.count(TrackOutgoing.OutgoingID))
        .where(TrackOutgoing.ArchivedAt.is_(None))
        .group_by(TrackOutgoing.Status)
    ).all():
        completion_counts[str(raw_status)] = int(count or 0)

    overdue_count = db.execute(
        select(func.count(TrackIncoming.IncomingID))
        .where(TrackIncoming.ArchivedAt.is_(None))
        .where(TrackIncoming.DueDate < today)
        .where(TrackIncoming.Status.in_([status.value for status in OPEN_INTAKE_STATUSES]))
    ).scalar()
    late_completions = db.execute(
        select(func.count(TrackOutgoing.OutgoingID))
        .where(TrackOutgoing.ArchivedAt.is_(None))
        .where(TrackOutgoing.Overdue == 1)
    ).scalar()
    return {
        "intakes": intake_counts,
        "completions": completion_counts,
        "overdueIntakes": int(overdue_count or 0),
        "lateCompletions": int(late_completions or 0),
    }
