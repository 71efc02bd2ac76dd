"""Pickup confirmation for calibrated equipment.

``released_by_id`` (fixed when the completion is created) names the operator who
released the item; ``employee_id_out`` / ``picked_up_by`` name the employee who
collected it. A pickup is only accepted from the department that handed the
equipment in, whoever is confirming it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.tracking_models import Employee, TrackOutgoing
from services.audit_service import log_audit
from services.completion_service import load_completion
from services.employee_service import department_label, get_employee, resolve_department, verify_pin
from services.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InternalError,
    NotFoundError,
    TrackingError,
    ValidationError,
)
from services.roles import Actor, can_bypass_credential
from services.status import CompletionStatus, ensure_completion_transition


logger = logging.getLogger("calibration_tracking.pickup")

NOT_READY_MESSAGE = "Equipment is not ready for pickup."


@dataclass
class PickupResult:
    completion: TrackOutgoing
    picker: Employee
    bypassed_pin: bool


def _ensure_same_department(db: Session, picker: Employee, completion: TrackOutgoing) -> None:
    intake = completion.Incoming
    employee_in = intake.EmployeeIn if intake is not None else None
    picker_department = resolve_department(db, picker)
    intake_department = resolve_department(db, employee_in)
    if picker_department is None or intake_department is None:
        raise ValidationError(
            "Cannot confirm pickup: missing department assignment. "
            "Both the picker and the submitting employee need a department."
        )
    if picker_department.DepartmentID != intake_department.DepartmentID:
        raise AuthorizationError(
            f"Department mismatch: you are from {department_label(picker_department)} "
            f"but the equipment was received from {department_label(intake_department)}. "
            "Only employees from the same department can pick up equipment."
        )


def _ensure_ready(completion: TrackOutgoing) -> None:
    try:
        ensure_completion_transition(completion.Status, CompletionStatus.COMPLETED)
    except ConflictError as exc:
        raise ConflictError(NOT_READY_MESSAGE) from exc


def confirm_pickup(
    db: Session,
    actor: Actor,
    outgoing_id: int,
    employee_id: int | None,
    confirmation_pin: str | None,
    now: datetime | None = None,
) -> PickupResult:
    can_bypass = can_bypass_credential(actor.role)
    pin = (confirmation_pin or "").strip()
    if employee_id is None:
        raise ValidationError("employee_id is required.")
    if not can_bypass and not pin:
        raise ValidationError("confirmation_pin is required.")

    try:
        completion = load_completion(db, outgoing_id, for_update=True)
        picker = get_employee(db, employee_id)
        if picker is None or picker.IsActive is False:
            raise NotFoundError("Employee not found")
        if not can_bypass and not verify_pin(picker, pin):
            raise AuthenticationError("Invalid PIN")
        _ensure_same_department(db, picker, completion)
        _ensure_ready(completion)

        picked_at = now or datetime.now()
        result = db.execute(
            update(TrackOutgoing)
            .where(TrackOutgoing.OutgoingID == completion.OutgoingID)
            .where(TrackOutgoing.Status == CompletionStatus.FOR_PICKUP.value)
            .values(
                Status=CompletionStatus.COMPLETED.value,
                EmployeeIDOut=picker.EmployeeID,
                PickedUpAt=picked_at,
                PickedUpBy=picker.EmployeeID,
                UpdatedDate=picked_at,
            )
            .execution_options(synchronize_session=False)
        )
        if (result.rowcount or 0) != 1:
            raise ConflictError(NOT_READY_MESSAGE)
        log_audit(
            db,
            "Completion",
            completion.OutgoingID,
            "ConfirmPickup",
            f"pickedUpBy={picker.EmployeeID} bypassedPin={can_bypass}",
            user_id=actor.employee_id,
        )
        db.commit()
    except TrackingError as exc:
        db.rollback()
        logger.info("Pickup rejected completion=%s employee=%s kind=%s", outgoing_id, employee_id, exc.kind)
        raise
    except Exception as exc:
        db.rollback()
        logger.exception("Pickup confirmation failed completion=%s employee=%s", outgoing_id, employee_id)
        raise InternalError("Could not confirm pickup.") from exc

    logger.info(
        "Pickup confirmed completion=%s picked_up_by=%s actor=%s bypassed_pin=%s",
        outgoing_id,
        picker.EmployeeID,
        actor.employee_id,
        can_bypass,
    )
    return PickupResult(
        completion=load_completion(db, outgoing_id),
        picker=picker,
        bypassed_pin=can_bypass,
    )
