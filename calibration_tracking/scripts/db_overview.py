#!/usr/bin/env python3
"""Database overview and integrity checks for calibration tracking."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import MetaData, Table, create_engine, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


EXPECTED_TABLES = [
    "Departments",
    "Locations",
    "Employees",
    "Equipments",
    "TrackIncoming",
    "TrackOutgoing",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Employees": ["EmployeeID", "Role", "DepartmentID", "PinHash", "PinSalt", "IsActive"],
    "TrackIncoming": [
        "IncomingID",
        "RecallNumber",
        "TechnicianID",
        "LocationID",
        "EmployeeIDIn",
        "DateIn",
        "DueDate",
        "Status",
        "ArchivedAt",
    ],
    "TrackOutgoing": [
        "OutgoingID",
        "IncomingID",
        "CalDate",
        "CalDueDate",
        "CycleTime",
        "CtReqd",
        "Overdue",
        "Status",
        "EmployeeIDOut",
        "ReleasedByID",
        "PickedUpAt",
        "PickedUpBy",
        "ArchivedAt",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
}

INTEGRITY_QUERIES: list[tuple[str, list[str], str]] = [
    (
        "trackoutgoing:employee_out_matches_status",
        ["TrackOutgoing"],
        """
        SELECT COUNT(*)
        FROM TrackOutgoing
        WHERE (Status = 'completed' AND EmployeeIDOut IS NULL)
           OR (Status <> 'completed' AND EmployeeIDOut IS NOT NULL)
        """,
    ),
    (
        "trackoutgoing:invalid_status",
        ["TrackOutgoing"],
        "SELECT COUNT(*) FROM TrackOutgoing WHERE Status NOT IN ('for_pickup', 'completed')",
    ),
    (
        "trackoutgoing:missing_released_by",
        ["TrackOutgoing"],
        "SELECT COUNT(*) FROM TrackOutgoing WHERE ReleasedByID IS NULL",
    ),
    (
        "trackoutgoing:cal_due_before_cal_date",
        ["TrackOutgoing"],
        "SELECT COUNT(*) FROM TrackOutgoing WHERE CalDueDate < CalDate",
    ),
    (
        "trackoutgoing:intake_not_completed",
        ["TrackOutgoing", "TrackIncoming"],
        """
        SELECT COUNT(*)
        FROM TrackOutgoing o
        JOIN TrackIncoming i ON i.IncomingID = o.IncomingID
        WHERE i.Status <> 'completed'
        """,
    ),
    (
        "trackoutgoing:orphan_incomingid",
        ["TrackOutgoing", "TrackIncoming"],
        """
        SELECT COUNT(*)
        FROM TrackOutgoing o
        LEFT JOIN TrackIncoming i ON i.IncomingID = o.IncomingID
        WHERE o.IncomingID IS NOT NULL AND i.IncomingID IS NULL
        """,
    ),
    (
        "trackincoming:invalid_status",
        ["TrackIncoming"],
        """
        SELECT COUNT(*)
        FROM TrackIncoming
        WHERE Status NOT IN ('for_confirmation', 'pending_calibration', 'completed')
        """,
    ),
    (
        "trackincoming:duplicate_recall_number",
        ["TrackIncoming"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT RecallNumber
            FROM TrackIncoming
            WHERE RecallNumber IS NOT NULL
            GROUP BY RecallNumber
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    checks: list[CheckResult] = []
    for name, tables, sql in INTEGRITY_QUERIES:
        if not all(table in present for table in tables):
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_counts(engine: Engine) -> None:
    _print_section("Status Counts")
    present = _table_names(engine)
    for table in ["TrackIncoming", "TrackOutgoing"]:
        if table not in present:
            print(f"{table}: missing")
            continue
        with engine.connect() as conn:
            rows = conn.execute(text(f"SELECT Status, COUNT(*) FROM {table} GROUP BY Status ORDER BY Status")).all()
        print(f"{table}:")
        for status, count in rows:
            print(f"  - {status}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)
    present = _table_names(engine)
    metadata = MetaData()

    for table_name, key, columns in [
        ("TrackOutgoing", "OutgoingID", ["OutgoingID", "IncomingID", "Status", "EmployeeIDOut", "PickedUpAt"]),
        ("AuditLogs", "AuditID", ["AuditID", "EntityType", "Action", "UserID", "CreatedAt"]),
    ]:
        if table_name not in present:
            continue
        table = Table(table_name, metadata, autoload_with=engine)
        stmt = select(*[table.c[name] for name in columns]).order_by(table.c[key].desc()).limit(sample_size)
        with engine.connect() as conn:
            rows = conn.execute(stmt).all()
        print(f"{table_name} (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Calibration tracking DB overview")
    parser.add_argument("--db-url", default=os.environ.get("CALIBRATION_TRACKING_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("CALIBRATION_TRACKING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except SQLAlchemyError as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_status_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
