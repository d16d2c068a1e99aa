"""Professional domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class LocationUpdate(BaseModel):
    """
    Location ping from the professional app

    Range checks happen in the registry so an out-of-range ping is reported
    with the same message everywhere.
    """

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    isAvailable: Optional[bool] = None
    bookingId: Optional[str] = None
    timestamp: Optional[datetime] = None


class LocationSnapshot(BaseModel):
    professionalId: str
    coordinates: List[float]
    isOnline: bool
    acceptingJobs: bool
    timestamp: Optional[datetime] = None
    bookingId: Optional[str] = None
    etaMinutes: Optional[int] = None


class NearbyProfessional(BaseModel):
    id: str
    name: str
    specializations: List[str]
    location: dict
    distanceKm: float
    rating: float


class ProfessionalStatus(BaseModel):
    id: str
    isOnline: bool
    isAvailable: bool
    lastSeen: Optional[datetime] = None
