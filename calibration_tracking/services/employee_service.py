from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from models.tracking_models import Department, Employee
from services.roles import Role


MIN_PIN_LENGTH = 4


def _pin_hash(pin_code: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (pin_code or "").encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def get_employee(db: Session, employee_id: int | None) -> Employee | None:
    if employee_id is None:
        return None
    try:
        key = int(employee_id)
    except (TypeError, ValueError):
        return None
    if key <= 0:
        return None
    return db.get(Employee, key)


def set_pin(db: Session, employee: Employee, pin_code: str) -> None:
    trimmed = (pin_code or "").strip()
    if len(trimmed) < MIN_PIN_LENGTH:
        raise ValueError(f"PIN must be at least {MIN_PIN_LENGTH} characters.")
    salt = secrets.token_hex(16)
    employee.PinSalt = salt
    employee.PinHash = _pin_hash(trimmed, salt)
    employee.PinUpdatedAt = datetime.now()


def verify_pin(employee: Employee, pin_code: str | None) -> bool:
    candidate = (pin_code or "").strip()
    if len(candidate) < MIN_PIN_LENGTH:
        return False
    if not employee.PinHash or not employee.PinSalt:
        return False
    return hmac.compare_digest(_pin_hash(candidate, str(employee.PinSalt)), str(employee.PinHash))


def employee_role(employee: Employee) -> Role:
    return Role.parse(employee.Role)


def resolve_department(db: Session, employee: Employee | None) -> Department | None:
    if employee is None or employee.DepartmentID is None:
        return None
    if employee.Department is not None:
        return employee.Department
    return db.get(Department, employee.DepartmentID)


def department_label(department: Department | None) -> str:
    if department is None:
        return "Unknown Department"
    return department.DepartmentName or f"Department #{department.DepartmentID}"


def display_name(employee: Employee | None) -> str | None:
    if employee is None:
        return None
    full = " ".join(part for part in [employee.FirstName, employee.LastName] if part)
    return full or f"Employee #{employee.EmployeeID}"


def serialize_employee(employee: Employee | None) -> dict[str, Any] | None:
    if employee is None:
        return None
    return {
        "employeeID": employee.EmployeeID,
        "firstName": employee.FirstName,
        "lastName": employee.LastName,
        "displayName": display_name(employee),
        "role": employee_role(employee).value,
        "departmentID": employee.DepartmentID,
        "departmentName": employee.Department.DepartmentName if employee.Department else None,
    }
