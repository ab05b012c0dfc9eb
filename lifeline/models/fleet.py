from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from lifeline.models.emergency import Coordinates


class AmbulanceStatus(str, Enum):
    AVAILABLE = "Available"
    ON_DUTY = "On Duty"
    IN_MAINTENANCE = "In Maintenance"
    UNAVAILABLE = "Unavailable"


class VehicleLocation(BaseModel):
    coordinates: tuple[float, float]  # (longitude, latitude)
    address: str | None = None
    last_updated: datetime | None = None


class Ambulance(BaseModel):
    id: str
    vehicle_number: str
    driver_id: str
    hospital_id: str
    status: AmbulanceStatus = AmbulanceStatus.AVAILABLE
    is_active: bool = True
    current_emergency_id: str | None = None
    current_location: VehicleLocation


class Hospital(BaseModel):
    id: str
    name: str
    coordinates: tuple[float, float]  # (longitude, latitude)
    is_active: bool = True


class NearbyHospital(BaseModel):
    hospital: Hospital
    distance_meters: float


class EmergencyContact(BaseModel):
    patient_id: str
    name: str
    phone: str | None = None
    relationship: str | None = None


class LocationReport(BaseModel):
    coordinates: Coordinates  # (longitude, latitude)
    address: str | None = None
