from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from models.tracking_models import TrackIncoming, TrackOutgoing
from schemas.completions import CreateCompletionDto, UpdateCompletionDto
from services.audit_service import log_audit
from services.employee_service import serialize_employee
from services.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from services.intake_service import ensure_recall_number_available, load_intake, serialize_intake
from services.overdue_service import derive_overdue, is_due_soon, scope_outgoing_to_department
from services.roles import Actor, can_archive, can_edit_completed, can_hard_delete, can_restore
from services.status import CompletionStatus, IntakeStatus, ensure_intake_transition


logger = logging.getLogger("calibration_tracking.completion")


def load_completion(db: Session, outgoing_id: int, *, for_update: bool = False, include_archived: bool = False) -> TrackOutgoing:
    stmt = (
        select(TrackOutgoing)
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Technician))
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Location))
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.EmployeeIn))
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Equipment))
        .options(selectinload(TrackOutgoing.EmployeeOut))
        .options(selectinload(TrackOutgoing.ReleasedBy))
        .where(TrackOutgoing.OutgoingID == outgoing_id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    completion = db.execute(stmt.execution_options(populate_existing=True)).scalars().first()
    if not completion or (completion.ArchivedAt is not None and not include_archived):
        raise NotFoundError("Completion record not found")
    return completion


def _validate_dates(cal_date: date | None, cal_due_date: date | None) -> None:
    if cal_date and cal_due_date and cal_due_date < cal_date:
        raise ValidationError("calDueDate must be on or after calDate.")


def create_completion(db: Session, actor: Actor, payload: CreateCompletionDto) -> TrackOutgoing:
    intake = load_intake(db, payload.incomingID, for_update=True)
    if intake.Completion is not None:
        raise ConflictError("A completion record already exists for this intake.")
    _validate_dates(payload.calDate, payload.calDueDate)

    try:
        next_status = ensure_intake_transition(intake.Status, IntakeStatus.COMPLETED)
        recall_number = (payload.recallNumber or "").strip() or None
        if recall_number:
            ensure_recall_number_available(db, recall_number, exclude_incoming_id=intake.IncomingID)

        now = datetime.now()
        # Intake status, recall stamps and the completion row share one commit.
        intake.Status = next_status.value
        intake.UpdatedDate = now
        if recall_number:
            intake.RecallNumber = recall_number
            if intake.Equipment is not None:
                intake.Equipment.RecallNumber = recall_number
                intake.Equipment.UpdatedDate = now
        if intake.Equipment is not None:
            intake.Equipment.NextCalibrationDue = payload.calDueDate

        completion = TrackOutgoing(
            IncomingID=intake.IncomingID,
            CalDate=payload.calDate,
            CalDueDate=payload.calDueDate,
            DateOut=payload.dateOut or now,
            CycleTime=payload.cycleTime,
            CtReqd=payload.ctReqd,
            CommitEtc=payload.commitEtc,
            ActualEtc=payload.actualEtc,
            Overdue=derive_overdue(payload.ctReqd, payload.cycleTime, payload.overdue),
            Status=CompletionStatus.FOR_PICKUP.value,
            EmployeeIDOut=None,
            ReleasedByID=actor.employee_id,
            CreatedDate=now,
            UpdatedDate=now,
        )
        db.add(completion)
        db.flush()
        log_audit(
            db,
            "Completion",
            completion.OutgoingID,
            "CreateCompletion",
            f"incoming={intake.IncomingID} overdue={completion.Overdue} recall={intake.RecallNumber}",
            user_id=actor.employee_id,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Completion created id=%s incoming=%s overdue=%s released_by=%s",
        completion.OutgoingID,
        intake.IncomingID,
        completion.Overdue,
        actor.employee_id,
    )
    return load_completion(db, completion.OutgoingID)


def edit_completion(db: Session, actor: Actor, outgoing_id: int, payload: UpdateCompletionDto) -> TrackOutgoing:
    completion = load_completion(db, outgoing_id, for_update=True)
    if completion.Status == CompletionStatus.COMPLETED.value and not can_edit_completed(actor.role):
        raise AuthorizationError("Only administrators can edit completed records")

    cal_date = payload.calDate if payload.calDate is not None else completion.CalDate
    cal_due_date = payload.calDueDate if payload.calDueDate is not None else completion.CalDueDate
    _validate_dates(cal_date, cal_due_date)

    completion.CalDate = cal_date
    completion.CalDueDate = cal_due_date
    if payload.dateOut is not None:
        completion.DateOut = payload.dateOut
    if payload.cycleTime is not None:
        completion.CycleTime = payload.cycleTime
    if payload.ctReqd is not None:
        completion.CtReqd = payload.ctReqd
    if payload.commitEtc is not None:
        completion.CommitEtc = payload.commitEtc
    if payload.actualEtc is not None:
        completion.ActualEtc = payload.actualEtc
    cycle_edited = payload.cycleTime is not None or payload.ctReqd is not None
    if payload.overdue is not None or cycle_edited:
        completion.Overdue = derive_overdue(completion.CtReqd, completion.CycleTime, payload.overdue)
    completion.UpdatedDate = datetime.now()

    log_audit(db, "Completion", completion.OutgoingID, "EditCompletion", f"overdue={completion.Overdue}", user_id=actor.employee_id)
    db.commit()
    return load_completion(db, completion.OutgoingID)


def archive_completion(db: Session, actor: Actor, outgoing_id: int) -> TrackOutgoing:
    if not can_archive(actor.role):
        raise AuthorizationError("Only administrators and technicians can archive completion records.")
    completion = load_completion(db, outgoing_id)
    completion.ArchivedAt = datetime.now()
    completion.ArchivedBy = actor.employee_id
    log_audit(db, "Completion", completion.OutgoingID, "ArchiveCompletion", None, user_id=actor.employee_id)
    db.commit()
    return completion


def restore_completion(db: Session, actor: Actor, outgoing_id: int) -> TrackOutgoing:
    if not can_restore(actor.role):
        raise AuthorizationError("Only administrators can restore archived records.")
    completion = load_completion(db, outgoing_id, include_archived=True)
    if completion.ArchivedAt is None:
        raise ConflictError("Completion record is not archived.")
    completion.ArchivedAt = None
    completion.ArchivedBy = None
    log_audit(db, "Completion", completion.OutgoingID, "RestoreCompletion", None, user_id=actor.employee_id)
    db.commit()
    return load_completion(db, completion.OutgoingID)


def delete_completion(db: Session, actor: Actor, outgoing_id: int) -> None:
    if not can_hard_delete(actor.role):
        raise AuthorizationError("Only administrators can permanently delete records.")
    completion = load_completion(db, outgoing_id, include_archived=True)
    log_audit(db, "Completion", completion.OutgoingID, "DeleteCompletion", f"incoming={completion.IncomingID}", user_id=actor.employee_id)
    db.delete(completion)
    db.commit()
    logger.warning("Completion deleted id=%s actor=%s", outgoing_id, actor.employee_id)


def list_completions_stmt(
    *,
    status: str | None = None,
    employee_id_out: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    department_id: int | None = None,
    archived: bool = False,
):
    stmt = (
        select(TrackOutgoing)
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Technician))
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Location))
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.EmployeeIn))
        .options(selectinload(TrackOutgoing.Incoming).selectinload(TrackIncoming.Equipment))
        .options(selectinload(TrackOutgoing.EmployeeOut))
        .options(selectinload(TrackOutgoing.ReleasedBy))
    )
    stmt = scope_outgoing_to_department(stmt, department_id)
    if archived:
        stmt = stmt.where(TrackOutgoing.ArchivedAt.is_not(None))
    else:
        stmt = stmt.where(TrackOutgoing.ArchivedAt.is_(None))
    if status:
        stmt = stmt.where(TrackOutgoing.Status == status)
    if employee_id_out is not None:
        stmt = stmt.where(TrackOutgoing.EmployeeIDOut == employee_id_out)
    if date_from is not None:
        stmt = stmt.where(TrackOutgoing.DateOut >= datetime.combine(date_from, datetime.min.time()))
    if date_to is not None:
        stmt = stmt.where(TrackOutgoing.DateOut <= datetime.combine(date_to, datetime.max.time()))
    query = (search or "").strip()
    if query:
        pattern = f"%{query}%"
        incoming_ids = select(TrackIncoming.IncomingID).where(
            or_(
                TrackIncoming.RecallNumber.ilike(pattern),
                TrackIncoming.Description.ilike(pattern),
                TrackIncoming.SerialNumber.ilike(pattern),
            )
        )
        stmt = stmt.where(TrackOutgoing.IncomingID.in_(incoming_ids))
    return stmt.order_by(TrackOutgoing.DateOut.desc(), TrackOutgoing.OutgoingID.desc())


def serialize_completion(completion: TrackOutgoing, today: date | None = None) -> dict:
    current_day = today or date.today()
    intake = completion.Incoming
    return {
        "outgoingID": completion.OutgoingID,
        "incomingID": completion.IncomingID,
        "recallNumber": intake.RecallNumber if intake else None,
        "calDate": completion.CalDate,
        "calDueDate": completion.CalDueDate,
        "dateOut": completion.DateOut,
        "cycleTime": completion.CycleTime,
        "ctReqd": completion.CtReqd,
        "commitEtc": completion.CommitEtc,
        "actualEtc": completion.ActualEtc,
        "overdue": int(completion.Overdue or 0),
        "isDueSoon": is_due_soon(completion, current_day),
        "status": completion.Status,
        "employeeIDOut": completion.EmployeeIDOut,
        "employeeOut": serialize_employee(completion.EmployeeOut),
        "releasedByID": completion.ReleasedByID,
        "releasedBy": serialize_employee(completion.ReleasedBy),
        "pickedUpAt": completion.PickedUpAt,
        "pickedUpBy": completion.PickedUpBy,
        "archivedAt": completion.ArchivedAt,
        "incoming": serialize_intake(intake, current_day) if intake else None,
        "technician": serialize_employee(intake.Technician) if intake else None,
        "location": {
            "locationID": intake.Location.LocationID,
            "locationName": intake.Location.LocationName,
        } if intake and intake.Location else None,
        "createdDate": completion.CreatedDate,
        "updatedDate": completion.UpdatedDate,
    }
