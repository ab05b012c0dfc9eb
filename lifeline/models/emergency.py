from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator, BaseModel, Field


class EmergencyStatus(str, Enum):
    PENDING = "Pending"
    DISPATCHED = "Dispatched"
    IN_TRANSIT = "In Transit"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED)


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class DispatchOutcome(str, Enum):
    DISPATCHED = "Dispatched"
    PENDING_NO_AMBULANCE = "PendingNoAmbulance"


def validate_coordinates(value: tuple[float, float]) -> tuple[float, float]:
    """Check a (longitude, latitude) pair is on the globe."""
    lon, lat = value
    if not -180.0 <= lon <= 180.0:
        raise ValueError(f"longitude out of range: {lon}")
    if not -90.0 <= lat <= 90.0:
        raise ValueError(f"latitude out of range: {lat}")
    return (float(lon), float(lat))


Coordinates = Annotated[tuple[float, float], AfterValidator(validate_coordinates)]


class EmergencyLocation(BaseModel):
    coordinates: Coordinates  # (longitude, latitude)
    address: str = Field(min_length=1)
    additional_info: str | None = None


class MedicalInfo(BaseModel):
    condition: str | None = None
    symptoms: list[str] = []
    notes: str | None = None


class TimelineEntry(BaseModel):
    status: EmergencyStatus
    timestamp: datetime
    coordinates: tuple[float, float] | None = None
    notes: str = ""


class Emergency(BaseModel):
    id: str
    patient_id: str
    location: EmergencyLocation
    hospital_id: str
    assigned_ambulance_id: str | None = None
    status: EmergencyStatus = EmergencyStatus.PENDING
    priority: Priority = Priority.MEDIUM
    medical_info: MedicalInfo = MedicalInfo()
    timeline: list[TimelineEntry] = []
    estimated_arrival_time: datetime | None = None
    actual_arrival_time: datetime | None = None
    completed_at: datetime | None = None
    version: int = 0
    created_at: datetime
    updated_at: datetime


class EmergencyCreate(BaseModel):
    location: EmergencyLocation
    medical_info: MedicalInfo = MedicalInfo()
    priority: Priority = Priority.MEDIUM


class EmergencyStatusUpdate(BaseModel):
    status: EmergencyStatus
    notes: str = ""


class DispatchResult(BaseModel):
    emergency: Emergency
    outcome: DispatchOutcome
