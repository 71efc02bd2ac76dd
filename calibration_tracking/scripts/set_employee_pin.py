#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.tracking_models import Department, Employee
from services.employee_service import MIN_PIN_LENGTH, employee_role, set_pin
from services.roles import Role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one Employees record and its pickup PIN directly from terminal.",
    )
    parser.add_argument("--employee-id", type=int, required=True, help="EmployeeID in Employees")
    parser.add_argument("--role", choices=[role.value for role in Role], default=None, help="Tracking role")
    parser.add_argument("--department-id", type=int, default=None, help="DepartmentID; must already exist")
    parser.add_argument("--first-name", default=None)
    parser.add_argument("--last-name", default=None)
    parser.add_argument("--pin", default=None, help="Optional PIN to set. Omit to keep existing PIN state.")
    parser.add_argument(
        "--reset-pin",
        action="store_true",
        help="Clear the stored PIN; the employee cannot confirm pickups until a new one is set.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("CALIBRATION_TRACKING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to CALIBRATION_TRACKING_DB_URL env var.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.employee_id <= 0:
        parser.error("--employee-id must be > 0")
    if not args.db_url:
        parser.error("Missing DB URL. Set CALIBRATION_TRACKING_DB_URL or pass --db-url.")
    if args.pin is not None and len(args.pin.strip()) < MIN_PIN_LENGTH:
        parser.error(f"--pin must be at least {MIN_PIN_LENGTH} characters.")
    if args.pin is not None and args.reset_pin:
        parser.error("Use either --pin or --reset-pin, not both.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with SessionLocal() as db:
        employee = db.get(Employee, args.employee_id)
        if employee is None:
            employee = Employee(EmployeeID=args.employee_id, Role=Role.EMPLOYEE.value, IsActive=True)
            db.add(employee)
        if args.department_id is not None:
            if db.get(Department, args.department_id) is None:
                parser.error(f"Department {args.department_id} does not exist.")
            employee.DepartmentID = args.department_id
        if args.role is not None:
            employee.Role = args.role
        if args.first_name is not None:
            employee.FirstName = args.first_name
        if args.last_name is not None:
            employee.LastName = args.last_name

        if args.reset_pin:
            employee.PinHash = None
            employee.PinSalt = None
            employee.PinUpdatedAt = None
        elif args.pin is not None:
            set_pin(db, employee, args.pin)
        db.commit()

        has_pin = bool(employee.PinHash and employee.PinSalt)
        print(
            f"OK employee_id={employee.EmployeeID} role={employee_role(employee).value} "
            f"department_id={employee.DepartmentID} has_pin={has_pin} pin_updated_at={employee.PinUpdatedAt}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
