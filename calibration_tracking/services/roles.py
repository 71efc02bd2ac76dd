from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    TECHNICIAN = "technician"
    EMPLOYEE = "employee"

    @classmethod
    def parse(cls, raw: str | None) -> "Role":
        value = (raw or "").strip().lower()
        for role in cls:
            if role.value == value:
                return role
        # Unknown roles get the least privileged tag.
        return cls.EMPLOYEE


_TRUSTED_ROLES = {Role.ADMIN, Role.TECHNICIAN}


def can_bypass_credential(role: Role) -> bool:
    return role in _TRUSTED_ROLES


def can_edit_completed(role: Role) -> bool:
    return role == Role.ADMIN


def can_confirm_intake(role: Role) -> bool:
    return role in _TRUSTED_ROLES


def can_archive(role: Role) -> bool:
    return role in _TRUSTED_ROLES


def can_restore(role: Role) -> bool:
    return role == Role.ADMIN


def can_hard_delete(role: Role) -> bool:
    return role == Role.ADMIN


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, resolved once per request."""

    employee_id: int
    role: Role
    department_id: int | None = None
    display_name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_technician(self) -> bool:
        return self.role == Role.TECHNICIAN

    @classmethod
    def from_session(cls, session: dict) -> "Actor":
        department = session.get("departmentID")
        return cls(
            employee_id=int(session.get("employeeID") or 0),
            role=Role.parse(session.get("role")),
            department_id=int(department) if department not in (None, "") else None,
            display_name=session.get("displayName"),
        )
