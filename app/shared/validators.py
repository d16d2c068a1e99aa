"""Shared validation utilities"""

import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from .geo import is_valid_latitude, is_valid_longitude

SERVICE_CATEGORIES = ("plumbing", "electrical", "carpentry", "cleaning", "painting")


def validate_phone(phone: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164-like digits with a leading +.

    Raises:
        ValueError: If the number has fewer than 8 or more than 15 digits
    """
    if not phone:
        return phone

    digits = re.sub(r"\D", "", phone)
    if len(digits) < 8 or len(digits) > 15:
        raise ValueError("Phone number must have between 8 and 15 digits")

    return f"+{digits}"


def validate_coordinates(coordinates: Optional[Iterable[float]]) -> Optional[List[float]]:
    """
    Validate a [longitude, latitude] pair.

    Raises:
        ValueError: If the pair is malformed or out of range
    """
    if coordinates is None:
        return None

    values = list(coordinates)
    if len(values) != 2:
        raise ValueError("Coordinates must be [longitude, latitude]")

    longitude, latitude = (float(v) for v in values)
    if not is_valid_longitude(longitude) or not is_valid_latitude(latitude):
        raise ValueError(
            "Latitude must be between -90 and 90, longitude between -180 and 180"
        )
    return [longitude, latitude]


def normalize_specializations(values: Optional[Iterable[str]]) -> List[str]:
    """Lowercase, strip and de-duplicate specializations, keeping order"""
    if not values:
        return []

    seen = []
    for value in values:
        item = (value or "").strip().lower()
        if item and item not in seen:
            seen.append(item)
    return seen


def validate_category(category: str) -> str:
    category = (category or "").strip().lower()
    if category not in SERVICE_CATEGORIES:
        raise ValueError(f"Category must be one of: {', '.join(SERVICE_CATEGORIES)}")
    return category


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
