from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Department(Base):
    __tablename__ = "Departments"

    DepartmentID = Column(Integer, primary_key=True)
    DepartmentName = Column(String(255), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())

    Employees = relationship("Employee", back_populates="Department")


class Location(Base):
    __tablename__ = "Locations"

    LocationID = Column(Integer, primary_key=True)
    LocationName = Column(String(255), nullable=False)
    CreatedDate = Column(DateTime, server_default=func.now())


class Employee(Base):
    __tablename__ = "Employees"

    EmployeeID = Column(Integer, primary_key=True, autoincrement=False)
    FirstName = Column(String(100))
    LastName = Column(String(100))
    Email = Column(String(255))
    Role = Column(String(50), nullable=False, default="employee")
    DepartmentID = Column(Integer, ForeignKey("Departments.DepartmentID"))
    PinHash = Column(String(256))
    PinSalt = Column(String(64))
    PinUpdatedAt = Column(DateTime)
    IsActive = Column(Boolean, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())

    Department = relationship("Department", back_populates="Employees")


class Equipment(Base):
    __tablename__ = "Equipments"

    EquipmentID = Column(Integer, primary_key=True)
    RecallNumber = Column(String(100))
    SerialNumber = Column(String(100))
    Description = Column(String(255))
    Model = Column(String(100))
    Manufacturer = Column(String(100))
    NextCalibrationDue = Column(Date)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())


class TrackIncoming(Base):
    __tablename__ = "TrackIncoming"

    IncomingID = Column(Integer, primary_key=True)
    RecallNumber = Column(String(100), unique=True)
    EquipmentID = Column(Integer, ForeignKey("Equipments.EquipmentID"))
    TechnicianID = Column(Integer, ForeignKey("Employees.EmployeeID"), nullable=False)
    LocationID = Column(Integer, ForeignKey("Locations.LocationID"), nullable=False)
    EmployeeIDIn = Column(Integer, ForeignKey("Employees.EmployeeID"), nullable=False)
    ReceivedByID = Column(Integer, ForeignKey("Employees.EmployeeID"))
    Description = Column(Text, nullable=False)
    SerialNumber = Column(String(100))
    Model = Column(String(100))
    Manufacturer = Column(String(100))
    DateIn = Column(DateTime, nullable=False)
    DueDate = Column(Date, nullable=False)
    Status = Column(String(30), nullable=False, default="pending_calibration")
    Notes = Column(Text)
    ArchivedAt = Column(DateTime)
    ArchivedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment")
    Technician = relationship("Employee", foreign_keys=[TechnicianID])
    Location = relationship("Location")
    EmployeeIn = relationship("Employee", foreign_keys=[EmployeeIDIn])
    ReceivedBy = relationship("Employee", foreign_keys=[ReceivedByID])
    Completion = relationship("TrackOutgoing", back_populates="Incoming", uselist=False)


class TrackOutgoing(Base):
    __tablename__ = "TrackOutgoing"

    OutgoingID = Column(Integer, primary_key=True)
    IncomingID = Column(Integer, ForeignKey("TrackIncoming.IncomingID"), unique=True)
    CalDate = Column(Date, nullable=False)
    CalDueDate = Column(Date, nullable=False)
    DateOut = Column(DateTime)
    CycleTime = Column(Integer)
    CtReqd = Column(Integer)
    CommitEtc = Column(Date)
    ActualEtc = Column(Date)
    Overdue = Column(Integer, default=0)
    Status = Column(String(30), nullable=False, default="for_pickup")
    EmployeeIDOut = Column(Integer, ForeignKey("Employees.EmployeeID"))
    ReleasedByID = Column(Integer, ForeignKey("Employees.EmployeeID"))
    PickedUpAt = Column(DateTime)
    PickedUpBy = Column(Integer, ForeignKey("Employees.EmployeeID"))
    ArchivedAt = Column(DateTime)
    ArchivedBy = Column(Integer)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Incoming = relationship("TrackIncoming", back_populates="Completion")
    EmployeeOut = relationship("Employee", foreign_keys=[EmployeeIDOut])
    ReleasedBy = relationship("Employee", foreign_keys=[ReleasedByID])


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
