# models.py

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class RecommendationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    APPROVED = "approved"


UNKNOWN_CLASSIFICATION = "unknown"


# Collaborator tables: written by registration, read by the pipeline

class Patient(SQLModel, table=True):
    __tablename__ = "patients"

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_number: str = Field(index=True, unique=True)
    name: str
    has_lab_data: bool = False


class PatientDemographics(SQLModel, table=True):
    __tablename__ = "patient_data"

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_number: str = Field(foreign_key="patients.patient_number", unique=True)
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None


class Doctor(SQLModel, table=True):
    __tablename__ = "doctors"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str


# Panel catalog reference data

class MeasurementItem(SQLModel, table=True):
    __tablename__ = "measurement_items"

    id: int = Field(primary_key=True)
    name: str = Field(unique=True)
    unit: str = ""
    # Patient attribute mirrored by this item, e.g. "gender"
    demographic_field: Optional[str] = None

    @property
    def is_demographic(self) -> bool:
        return self.demographic_field is not None


class PanelDefinition(SQLModel, table=True):
    __tablename__ = "panels"

    id: int = Field(primary_key=True)
    name: str


class PanelItem(SQLModel, table=True):
    __tablename__ = "panel_items"

    panel_id: int = Field(foreign_key="panels.id", primary_key=True)
    item_id: int = Field(foreign_key="measurement_items.id", primary_key=True)
    position: int = 0


# Pipeline-owned tables

class TestInstance(SQLModel, table=True):
    __tablename__ = "test_instances"

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patients.id", index=True)
    panel_id: int = Field(foreign_key="panels.id")
    test_date: date = Field(index=True)
    doctor_id: int = Field(foreign_key="doctors.id")
    uploaded_by: Optional[int] = None
    status: str = TestStatus.PENDING.value
    created_at: datetime = Field(default_factory=utcnow)


class MeasurementValue(SQLModel, table=True):
    __tablename__ = "measurement_values"
    __table_args__ = (UniqueConstraint("test_instance_id", "item_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    test_instance_id: int = Field(foreign_key="test_instances.id", index=True)
    item_id: int = Field(foreign_key="measurement_items.id")
    value: str
    classification: Optional[str] = None


class PatientDoctorAssignment(SQLModel, table=True):
    __tablename__ = "patient_doctor"
    __table_args__ = (UniqueConstraint("patient_id", "doctor_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patients.id")
    doctor_id: int = Field(foreign_key="doctors.id")
    assigned_by: Optional[int] = None
    assigned_at: datetime = Field(default_factory=utcnow)


class Recommendation(SQLModel, table=True):
    __tablename__ = "recommendations"
    # One recommendation per patient per test date
    __table_args__ = (UniqueConstraint("patient_id", "test_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patients.id")
    doctor_id: Optional[int] = Field(default=None, foreign_key="doctors.id")
    test_date: date
    generated_text: str
    doctor_text: Optional[str] = None
    status: str = RecommendationStatus.PENDING.value
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
