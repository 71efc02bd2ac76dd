from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateIntakeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    requestType: Literal["new", "routine"] = "new"
    description: Optional[str] = None
    serialNumber: Optional[str] = None
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    dueDate: Optional[date] = None
    technicianID: Optional[int] = None
    locationID: Optional[int] = None
    employeeIDIn: Optional[int] = None
    receivedByID: Optional[int] = None
    equipmentID: Optional[int] = None
    recallNumber: Optional[str] = None
    notes: Optional[str] = None


class UpdateIntakeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: Optional[str] = None
    serialNumber: Optional[str] = None
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    dueDate: Optional[date] = None
    technicianID: Optional[int] = None
    locationID: Optional[int] = None
    employeeIDIn: Optional[int] = None
    receivedByID: Optional[int] = None
    notes: Optional[str] = None


class ConfirmIntakeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    receivedByID: Optional[int] = None
