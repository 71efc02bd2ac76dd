from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.overdue_service import normalize_overdue_flag


class _OverdueFlagMixin(BaseModel):
    overdue: Optional[Union[int, str]] = None

    @field_validator("overdue", mode="before")
    @classmethod
    def _normalize_overdue(cls, value):
        if value is None:
            return None
        return normalize_overdue_flag(value)


class CreateCompletionDto(_OverdueFlagMixin):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    incomingID: int = Field(alias="incoming_id")
    calDate: date
    calDueDate: date
    dateOut: Optional[datetime] = None
    cycleTime: int = Field(ge=0)
    ctReqd: Optional[int] = Field(default=None, ge=0)
    commitEtc: Optional[date] = None
    actualEtc: Optional[date] = None
    recallNumber: Optional[str] = None


class UpdateCompletionDto(_OverdueFlagMixin):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    calDate: Optional[date] = None
    calDueDate: Optional[date] = None
    dateOut: Optional[datetime] = None
    cycleTime: Optional[int] = Field(default=None, ge=0)
    ctReqd: Optional[int] = Field(default=None, ge=0)
    commitEtc: Optional[date] = None
    actualEtc: Optional[date] = None


class ConfirmPickupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    employeeID: Optional[int] = Field(default=None, alias="employee_id")
    confirmationPin: Optional[str] = Field(default=None, alias="confirmation_pin")
