"""Professional router - FastAPI endpoints for location and proximity search"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import Actor, get_current_actor, require_professional
from ...database import get_db
from ...shared.validators import to_naive_utc
from ..matching.engine import MatchingEngine
from ..tracking.service import TrackingService
from .schemas import LocationSnapshot, LocationUpdate, NearbyProfessional, ProfessionalStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/professionals", tags=["Professionals"])


def get_tracking_service(db: Session = Depends(get_db)) -> TrackingService:
    """Dependency injection for TrackingService"""
    return TrackingService(db)


@router.put("/location", response_model=LocationSnapshot)
async def update_location(
    data: LocationUpdate,
    professional: Actor = Depends(require_professional),
    service: TrackingService = Depends(get_tracking_service),
):
    """Location ping; also refreshes the ETA of the booking being worked on"""
    snapshot = service.ingest_location(
        professional.id,
        latitude=data.latitude,
        longitude=data.longitude,
        booking_id=data.bookingId,
        accuracy=data.accuracy,
        heading=data.heading,
        speed=data.speed,
        accepting_jobs=data.isAvailable,
        timestamp=to_naive_utc(data.timestamp),
    )
    return LocationSnapshot(**snapshot)


@router.post("/offline", response_model=ProfessionalStatus)
async def go_offline(
    professional: Actor = Depends(require_professional),
    service: TrackingService = Depends(get_tracking_service),
):
    """Disconnect teardown: stop receiving dispatches until the next ping"""
    updated = service.disconnect(professional.id)
    return ProfessionalStatus(
        id=updated.id,
        isOnline=updated.is_online,
        isAvailable=updated.is_available,
        lastSeen=updated.last_seen,
    )


@router.get("/nearby", response_model=List[NearbyProfessional])
async def nearby_professionals(
    latitude: float,
    longitude: float,
    radius: Optional[float] = Query(None, description="Search radius in meters (max 50km)"),
    specializations: Optional[List[str]] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """Verified, available professionals near a point, nearest first"""
    # Accept both ?specializations=a&specializations=b and ?specializations=a,b
    wanted = None
    if specializations:
        wanted = [s for value in specializations for s in value.split(",")]

    candidates = MatchingEngine(db).nearby(latitude, longitude, radius, wanted)
    logger.debug(f"🔍 {actor.role} {actor.id} found {len(candidates)} professional(s) nearby")
    return [
        NearbyProfessional(
            id=c.professional.id,
            name=c.professional.name,
            specializations=c.professional.specializations or [],
            location={
                "type": "Point",
                "coordinates": [c.professional.longitude, c.professional.latitude],
            },
            distanceKm=round(c.distance_km, 3),
            rating=c.professional.rating_average or 0.0,
        )
        for c in candidates
    ]
