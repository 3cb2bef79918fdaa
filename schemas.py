"""
Database Schemas for the clinic / spa administration backend

Each Pydantic model represents a MongoDB collection (collection name is the lowercase of the class name).
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Sentinel used in the staff dropdown for a sale that no staff member earned
HOUSE_SALE = "Clinic Sale"

TargetType = Literal["Daily", "Weekly", "Monthly", "Quarterly", "Yearly"]
BranchPeriod = Literal["daily", "weekly", "monthly", "quarterly", "half-yearly", "yearly"]

# Infinity and NaN are rejected on every numeric field
FINITE = ConfigDict(allow_inf_nan=False)


class Doctor(BaseModel):
    """Doctors practising at the clinic"""
    model_config = FINITE

    name: str = Field(..., min_length=1)
    specialty: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, description="Unique, stored lower-cased")
    phone: str = Field(..., min_length=1)
    experience: float = Field(..., ge=0, description="Years of experience")
    qualification: str = Field(..., min_length=1)
    availability: str = Field(..., min_length=1)
    salary: float = Field(..., ge=0)

    @field_validator("name", "specialty", "phone", "qualification", "availability")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class Staff(BaseModel):
    """Non-doctor staff (therapists, front desk, ...)"""
    model_config = FINITE

    name: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    experience: float = Field(..., ge=0)
    qualification: str = Field(..., min_length=1)
    salary: float = Field(..., ge=0)


class Client(BaseModel):
    """Clients of the clinic"""
    name: str = Field(..., min_length=1)
    age: int = Field(..., ge=1)
    mobile: str = Field(..., pattern=r"^[0-9]{10}$", description="10 digit mobile number")
    address: Optional[str] = None
    dob: datetime
    gender: Literal["Male", "Female", "Other"]

    @field_validator("name", "mobile")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


class Service(BaseModel):
    """Treatments offered, with a package price and session count"""
    model_config = FINITE

    name: str
    description: str
    price: float = Field(..., ge=0)
    category: str
    sessions: int = Field(..., ge=1)


class Appointment(BaseModel):
    client_name: str
    age: int = Field(..., ge=0)
    gender: str
    contact: str
    service: str
    doctor_name: str
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD")
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="HH:MM")


class Bill(BaseModel):
    """Bills for a client's course of sessions

    `assigned_staff` and `assigned_doctor` hold the assignee *name* as it read
    when the bill was written, not an id.
    """
    model_config = FINITE

    client_name: str = Field(..., min_length=1)
    assigned_staff: str = Field(HOUSE_SALE, description="Staff name, or 'Clinic Sale'")
    assigned_doctor: Optional[str] = None
    services: str = Field(..., min_length=1)
    total_sessions: int = Field(..., ge=1)
    sessions_completed: int = Field(0, ge=0)
    cost: float = Field(0, ge=0, description="Pre-tax cost")
    total_amount: float = Field(0, ge=0, description="Cost including GST")
    amount_paid: float = Field(0, ge=0)
    pending_amount: float = Field(0, description="total_amount - amount_paid")
    payment_method: str = ""
    notes: Optional[str] = None
    date: datetime = Field(..., description="Service date")

    @model_validator(mode="after")
    def _sessions_within_total(self):
        if self.sessions_completed > self.total_sessions:
            raise ValueError("sessions_completed cannot exceed total_sessions")
        return self


class StaffTarget(BaseModel):
    model_config = FINITE

    staff_id: str = Field(..., min_length=1)
    target_amount: float = Field(..., gt=0)
    target_type: TargetType


class DoctorTarget(BaseModel):
    model_config = FINITE

    doctor_id: str = Field(..., min_length=1)
    target_amount: float = Field(..., gt=0)
    target_type: TargetType


class BranchTarget(BaseModel):
    """A single clinic-wide sales goal"""
    model_config = FINITE

    amount: float = Field(..., gt=0)
    period: BranchPeriod
    date_set: datetime
