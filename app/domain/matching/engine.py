"""
Matching Engine

Ranks eligible professionals for a booking under a radius/limit policy and
decides when a booking that found nobody is tried again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from ... import config
from ...models import Booking, Service
from ...shared.exceptions import ValidationError
from ...shared.geo import GeoPoint, is_valid_latitude, is_valid_longitude
from ...shared.validators import normalize_specializations
from ..professionals.repository import Candidate, ProfessionalRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchPolicy:
    radius_meters: float
    limit: Optional[int]  # None broadcasts to every eligible professional


NORMAL_POLICY = MatchPolicy(radius_meters=15_000, limit=5)
EMERGENCY_POLICY = MatchPolicy(radius_meters=5_000, limit=None)
NEARBY_MAX_RADIUS_METERS = 50_000
NEARBY_LIMIT = 50
NEARBY_DEFAULT_RADIUS_METERS = 5_000


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded rebroadcast schedule for bookings nobody has accepted yet"""

    max_attempts: int = config.DISPATCH_MAX_ATTEMPTS
    base_delay_seconds: int = config.DISPATCH_RETRY_BASE_SECONDS
    multiplier: float = config.DISPATCH_RETRY_MULTIPLIER

    def next_delay(self, attempt: int) -> timedelta:
        """Delay after the given (1-based) attempt"""
        return timedelta(seconds=self.base_delay_seconds * (self.multiplier ** max(attempt - 1, 0)))

    def next_attempt_at(self, attempt: int, now: datetime) -> datetime:
        return now + self.next_delay(attempt)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def required_capabilities(service: Service) -> List[str]:
    """Specializations able to serve a service; defaults to its category"""
    types = normalize_specializations(service.professional_types)
    return types or normalize_specializations([service.category])


class MatchingEngine:
    """Chooses candidate professionals for bookings"""

    def __init__(self, db: Session, retry_policy: Optional[RetryPolicy] = None):
        self.db = db
        self.registry = ProfessionalRegistry()
        self.retry_policy = retry_policy or RetryPolicy()

    @staticmethod
    def policy_for(booking: Booking) -> MatchPolicy:
        return EMERGENCY_POLICY if booking.is_emergency else NORMAL_POLICY

    def rank(self, booking: Booking) -> List[Candidate]:
        """Eligible professionals for a booking, nearest first"""
        policy = self.policy_for(booking)
        capabilities = required_capabilities(booking.service)
        origin = GeoPoint(longitude=booking.longitude, latitude=booking.latitude)

        candidates = self.registry.find_candidates(
            self.db,
            capabilities,
            origin,
            max_distance_meters=policy.radius_meters,
            limit=policy.limit,
        )
        logger.info(
            f"🔍 Booking {booking.id}: {len(candidates)} candidate(s) for {capabilities} "
            f"within {policy.radius_meters / 1000:.0f}km"
        )
        return candidates

    def nearby(
        self,
        latitude: float,
        longitude: float,
        radius_meters: Optional[float] = None,
        specializations: Optional[List[str]] = None,
    ) -> List[Candidate]:
        """
        Customer-facing "professionals near me" lookup.

        Radius defaults to 5km and is capped at 50km; no specializations means
        no capability filter.
        """
        if not is_valid_latitude(latitude) or not is_valid_longitude(longitude):
            raise ValidationError(
                "Latitude must be between -90 and 90, longitude between -180 and 180"
            )
        radius = radius_meters or NEARBY_DEFAULT_RADIUS_METERS
        if radius <= 0:
            raise ValidationError("Radius must be positive")
        radius = min(radius, NEARBY_MAX_RADIUS_METERS)

        capabilities = normalize_specializations(specializations) or None
        return self.registry.find_candidates(
            self.db,
            capabilities,
            GeoPoint(longitude=longitude, latitude=latitude),
            max_distance_meters=radius,
            limit=NEARBY_LIMIT,
        )
