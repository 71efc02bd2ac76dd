from __future__ import annotations

import logging
import secrets
from datetime import date, datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from models.tracking_models import Equipment, Location, TrackIncoming, TrackOutgoing
from schemas.intakes import CreateIntakeDto, UpdateIntakeDto
from services.audit_service import log_audit
from services.employee_service import get_employee, serialize_employee
from services.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from services.overdue_service import is_intake_overdue
from services.roles import Actor, can_archive, can_confirm_intake, can_hard_delete, can_restore
from services.status import IntakeStatus, ensure_intake_transition


logger = logging.getLogger("calibration_tracking.intake")

RECALL_PREFIX = "RCL"
_RECALL_ATTEMPTS = 50


def generate_recall_number(db: Session) -> str:
    for _ in range(_RECALL_ATTEMPTS):
        candidate = f"{RECALL_PREFIX}-{secrets.randbelow(900000) + 100000}"
        if not _recall_number_taken(db, candidate):
            return candidate
    raise ConflictError("Could not generate a unique recall number.")


def _recall_number_taken(db: Session, recall_number: str, exclude_incoming_id: int | None = None) -> bool:
    stmt = select(TrackIncoming.IncomingID).where(TrackIncoming.RecallNumber == recall_number)
    if exclude_incoming_id is not None:
        stmt = stmt.where(TrackIncoming.IncomingID != exclude_incoming_id)
    return db.execute(stmt).first() is not None


def ensure_recall_number_available(db: Session, recall_number: str, exclude_incoming_id: int | None = None) -> None:
    if _recall_number_taken(db, recall_number, exclude_incoming_id):
        raise ConflictError(f"Recall number {recall_number} is already assigned to another intake.")


def load_intake(db: Session, incoming_id: int, *, for_update: bool = False, include_archived: bool = False) -> TrackIncoming:
    stmt = (
        select(TrackIncoming)
        .options(
            selectinload(TrackIncoming.Technician),
            selectinload(TrackIncoming.Location),
            selectinload(TrackIncoming.EmployeeIn),
            selectinload(TrackIncoming.ReceivedBy),
            selectinload(TrackIncoming.Equipment),
            selectinload(TrackIncoming.Completion),
        )
        .where(TrackIncoming.IncomingID == incoming_id)
    )
    if for_update:
        stmt = stmt.with_for_update()
    intake = db.execute(stmt.execution_options(populate_existing=True)).scalars().first()
    if not intake or (intake.ArchivedAt is not None and not include_archived):
        raise NotFoundError("Intake record not found")
    return intake


def _require_text(value: str | None, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required.")
    return cleaned


def _require_employee(db: Session, employee_id: int | None, label: str) -> int:
    if employee_id is None:
        raise ValidationError(f"{label} is required.")
    if not get_employee(db, employee_id):
        raise ValidationError(f"Selected {label.lower()} does not exist.")
    return int(employee_id)


def _require_location(db: Session, location_id: int | None) -> int:
    if location_id is None:
        raise ValidationError("Location is required.")
    if not db.get(Location, location_id):
        raise ValidationError("Selected location does not exist.")
    return int(location_id)


def create_intake(db: Session, actor: Actor, payload: CreateIntakeDto) -> TrackIncoming:
    description = _require_text(payload.description, "Description")
    if payload.dueDate is None:
        raise ValidationError("Due date is required.")
    technician_id = payload.technicianID
    received_by_id = payload.receivedByID
    if actor.is_technician:
        technician_id = actor.employee_id
        received_by_id = actor.employee_id
    technician_id = _require_employee(db, technician_id, "Technician")
    location_id = _require_location(db, payload.locationID)
    employee_in_id = _require_employee(db, payload.employeeIDIn, "Employee")
    if received_by_id is not None:
        received_by_id = _require_employee(db, received_by_id, "Received by")

    recall_number = (payload.recallNumber or "").strip() or None
    if payload.requestType == "routine" and not recall_number:
        raise ValidationError("Recall number is required for routine calibration requests.")
    if recall_number:
        ensure_recall_number_available(db, recall_number)

    equipment = None
    if payload.equipmentID is not None:
        equipment = db.get(Equipment, payload.equipmentID)
        if not equipment:
            raise ValidationError("Selected equipment does not exist.")
    elif recall_number:
        equipment = db.execute(
            select(Equipment).where(Equipment.RecallNumber == recall_number)
        ).scalars().first()
        if equipment is None and payload.requestType == "routine":
            raise NotFoundError(f"Equipment with recall number {recall_number} not found.")


    status = IntakeStatus.PENDING_CALIBRATION if payload.requestType == "routine" else IntakeStatus.FOR_CONFIRMATION
    now = datetime.now()
    intake = TrackIncoming(
        RecallNumber=recall_number,
        EquipmentID=equipment.EquipmentID if equipment else None,
        TechnicianID=technician_id,
        LocationID=location_id,
        EmployeeIDIn=employee_in_id,
        ReceivedByID=received_by_id,
        Description=description,
        SerialNumber=payload.serialNumber or (equipment.SerialNumber if equipment else None),
        Model=payload.model or (equipment.Model if equipment else None),
        Manufacturer=payload.manufacturer or (equipment.Manufacturer if equipment else None),
        DateIn=now,
        DueDate=payload.dueDate,
        Status=status.value,
        Notes=payload.notes,
        CreatedDate=now,
        UpdatedDate=now,
    )
    if equipment:
        equipment.NextCalibrationDue = payload.dueDate
        equipment.UpdatedDate = now
    db.add(intake)
    db.flush()
    log_audit(db, "Intake", intake.IncomingID, "CreateIntake", f"Created with status {status.value}", user_id=actor.employee_id)
    db.commit()
    logger.info("Intake created id=%s status=%s recall=%s actor=%s", intake.IncomingID, status.value, recall_number, actor.employee_id)
    return load_intake(db, intake.IncomingID)


def edit_intake(db: Session, actor: Actor, incoming_id: int, payload: UpdateIntakeDto) -> TrackIncoming:
    intake = load_intake(db, incoming_id, for_update=True)
    if intake.Status == IntakeStatus.COMPLETED.value and not actor.is_admin:
        raise AuthorizationError("Only administrators can edit completed intake records")
    if payload.dueDate is not None and payload.dueDate != intake.DueDate:
        raise ValidationError("Due date cannot be changed after intake.")

    if payload.description is not None:
        intake.Description = _require_text(payload.description, "Description")
    if payload.serialNumber is not None:
        intake.SerialNumber = payload.serialNumber
    if payload.model is not None:
        intake.Model = payload.model
    if payload.manufacturer is not None:
        intake.Manufacturer = payload.manufacturer
    if payload.locationID is not None:
        intake.LocationID = _require_location(db, payload.locationID)
    if payload.employeeIDIn is not None:
        intake.EmployeeIDIn = _require_employee(db, payload.employeeIDIn, "Employee")
    if actor.is_technician:
        intake.TechnicianID = actor.employee_id
        intake.ReceivedByID = actor.employee_id
    else:
        if payload.technicianID is not None:
            intake.TechnicianID = _require_employee(db, payload.technicianID, "Technician")
        if payload.receivedByID is not None:
            intake.ReceivedByID = _require_employee(db, payload.receivedByID, "Received by")
    if payload.notes is not None:
        intake.Notes = payload.notes
    intake.UpdatedDate = datetime.now()

    log_audit(db, "Intake", intake.IncomingID, "EditIntake", None, user_id=actor.employee_id)
    db.commit()
    return load_intake(db, intake.IncomingID)


def confirm_intake(db: Session, actor: Actor, incoming_id: int, received_by_id: int | None = None) -> TrackIncoming:
    if not can_confirm_intake(actor.role):
        raise AuthorizationError("Only administrators and technicians can confirm intake requests.")
    intake = load_intake(db, incoming_id, for_update=True)
    if actor.is_technician and actor.employee_id not in {intake.TechnicianID, intake.ReceivedByID}:
        raise AuthorizationError("Technicians can only confirm requests assigned to them.")
    if intake.Status != IntakeStatus.FOR_CONFIRMATION.value:
        raise ConflictError("This request is not awaiting confirmation.")
    intake.Status = ensure_intake_transition(intake.Status, IntakeStatus.PENDING_CALIBRATION).value
    if received_by_id is not None:
        intake.ReceivedByID = _require_employee(db, received_by_id, "Received by")
    intake.UpdatedDate = datetime.now()
    log_audit(db, "Intake", intake.IncomingID, "ConfirmIntake", "for_confirmation -> pending_calibration", user_id=actor.employee_id)
    db.commit()
    logger.info("Intake confirmed id=%s actor=%s", intake.IncomingID, actor.employee_id)
    return load_intake(db, intake.IncomingID)


def archive_intake(db: Session, actor: Actor, incoming_id: int) -> TrackIncoming:
    if not can_archive(actor.role):
        raise AuthorizationError("Only administrators and technicians can archive intake records.")
    intake = load_intake(db, incoming_id)
    intake.ArchivedAt = datetime.now()
    intake.ArchivedBy = actor.employee_id
    log_audit(db, "Intake", intake.IncomingID, "ArchiveIntake", None, user_id=actor.employee_id)
    db.commit()
    return intake


def restore_intake(db: Session, actor: Actor, incoming_id: int) -> TrackIncoming:
    if not can_restore(actor.role):
        raise AuthorizationError("Only administrators can restore archived records.")
    intake = load_intake(db, incoming_id, include_archived=True)
    if intake.ArchivedAt is None:
        raise ConflictError("Intake record is not archived.")
    intake.ArchivedAt = None
    intake.ArchivedBy = None
    log_audit(db, "Intake", intake.IncomingID, "RestoreIntake", None, user_id=actor.employee_id)
    db.commit()
    return load_intake(db, intake.IncomingID)


def delete_intake(db: Session, actor: Actor, incoming_id: int, force: bool = False) -> None:
    if not can_hard_delete(actor.role):
        raise AuthorizationError("Only administrators can permanently delete records.")
    intake = load_intake(db, incoming_id, include_archived=True)
    completion = db.execute(
        select(TrackOutgoing).where(TrackOutgoing.IncomingID == intake.IncomingID)
    ).scalars().first()
    if completion is not None:
        if not force:
            raise ConflictError("Intake has a completion record. Use force to delete it.")
        # Keep the completion; only detach it from the deleted intake.
        completion.IncomingID = None
        completion.UpdatedDate = datetime.now()
    log_audit(
        db,
        "Intake",
        intake.IncomingID,
        "DeleteIntake",
        f"force={bool(force)} detachedCompletion={completion.OutgoingID if completion else None}",
        user_id=actor.employee_id,
    )
    db.delete(intake)
    db.commit()
    logger.warning("Intake deleted id=%s force=%s actor=%s", incoming_id, force, actor.employee_id)


def list_intakes_stmt(
    *,
    status: str | None = None,
    technician_id: int | None = None,
    location_id: int | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    archived: bool = False,
):
    stmt = select(TrackIncoming).options(
        selectinload(TrackIncoming.Technician),
        selectinload(TrackIncoming.Location),
        selectinload(TrackIncoming.EmployeeIn),
        selectinload(TrackIncoming.ReceivedBy),
        selectinload(TrackIncoming.Equipment),
        selectinload(TrackIncoming.Completion),
    )
    if archived:
        stmt = stmt.where(TrackIncoming.ArchivedAt.is_not(None))
    else:
        stmt = stmt.where(TrackIncoming.ArchivedAt.is_(None))
    if status:
        stmt = stmt.where(TrackIncoming.Status == status)
    if technician_id is not None:
        stmt = stmt.where(TrackIncoming.TechnicianID == technician_id)
    if location_id is not None:
        stmt = stmt.where(TrackIncoming.LocationID == location_id)
    if date_from is not None:
        stmt = stmt.where(TrackIncoming.DateIn >= datetime.combine(date_from, datetime.min.time()))
    if date_to is not None:
        stmt = stmt.where(TrackIncoming.DateIn <= datetime.combine(date_to, datetime.max.time()))
    query = (search or "").strip()
    if query:
        pattern = f"%{query}%"
        stmt = stmt.where(
            or_(
                TrackIncoming.RecallNumber.ilike(pattern),
                TrackIncoming.Description.ilike(pattern),
                TrackIncoming.SerialNumber.ilike(pattern),
            )
        )
    return stmt.order_by(TrackIncoming.DateIn.desc(), TrackIncoming.IncomingID.desc())


def serialize_intake(intake: TrackIncoming, today: date | None = None) -> dict:
    current_day = today or date.today()
    completion = intake.Completion
    return {
        "incomingID": intake.IncomingID,
        "recallNumber": intake.RecallNumber,
        "equipmentID": intake.EquipmentID,
        "description": intake.Description,
        "serialNumber": intake.SerialNumber,
        "model": intake.Model,
        "manufacturer": intake.Manufacturer,
        "dateIn": intake.DateIn,
        "dueDate": intake.DueDate,
        "status": intake.Status,
        "isOverdue": is_intake_overdue(intake, current_day),
        "notes": intake.Notes,
        "technicianID": intake.TechnicianID,
        "technician": serialize_employee(intake.Technician),
        "locationID": intake.LocationID,
        "location": {
            "locationID": intake.Location.LocationID,
            "locationName": intake.Location.LocationName,
        } if intake.Location else None,
        "employeeIDIn": intake.EmployeeIDIn,
        "employeeIn": serialize_employee(intake.EmployeeIn),
        "receivedByID": intake.ReceivedByID,
        "receivedBy": serialize_employee(intake.ReceivedBy),
        "equipment": {
            "equipmentID": intake.Equipment.EquipmentID,
            "recallNumber": intake.Equipment.RecallNumber,
            "serialNumber": intake.Equipment.SerialNumber,
            "description": intake.Equipment.Description,
        } if intake.Equipment else None,
        "completionID": completion.OutgoingID if completion else None,
        "completionStatus": completion.Status if completion else None,
        "archivedAt": intake.ArchivedAt,
        "createdDate": intake.CreatedDate,
        "updatedDate": intake.UpdatedDate,
    }
