"""Service catalog schemas - Pydantic models for validation"""

from typing import List, Optional

from pydantic import BaseModel, field_validator

from ...shared.validators import normalize_specializations, validate_category

PRICING_MODELS = ("fixed", "hourly", "per_unit", "custom")


def clean_name(v):
    v = (v or "").strip()
    if not v:
        raise ValueError("Name is required")
    return v


def check_base_price(v):
    if v < 0:
        raise ValueError("Base price cannot be negative")
    return v


def check_pricing_model(v):
    if v not in PRICING_MODELS:
        raise ValueError(f"Pricing model must be one of: {', '.join(PRICING_MODELS)}")
    return v


class ServiceCreate(BaseModel):
    """Schema for creating a catalog service (admin only)"""

    name: str
    category: str
    basePrice: float
    description: Optional[str] = None
    pricingModel: str = "fixed"
    professionalTypes: List[str] = []

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return clean_name(v)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v):
        return validate_category(v)

    @field_validator("basePrice")
    @classmethod
    def validate_base_price(cls, v):
        return check_base_price(v)

    @field_validator("pricingModel")
    @classmethod
    def validate_pricing_model(cls, v):
        return check_pricing_model(v)

    @field_validator("professionalTypes")
    @classmethod
    def validate_professional_types(cls, v):
        return normalize_specializations(v)


class ServiceUpdate(BaseModel):
    """Schema for updating a catalog service (admin only); omitted fields are left alone"""

    name: Optional[str] = None
    category: Optional[str] = None
    basePrice: Optional[float] = None
    description: Optional[str] = None
    pricingModel: Optional[str] = None
    professionalTypes: Optional[List[str]] = None
    isActive: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return clean_name(v) if v is not None else v

    @field_validator("category")
    @classmethod
    def validate_category(cls, v):
        return validate_category(v) if v is not None else v

    @field_validator("basePrice")
    @classmethod
    def validate_base_price(cls, v):
        return check_base_price(v) if v is not None else v

    @field_validator("pricingModel")
    @classmethod
    def validate_pricing_model(cls, v):
        return check_pricing_model(v) if v is not None else v

    @field_validator("professionalTypes")
    @classmethod
    def validate_professional_types(cls, v):
        return normalize_specializations(v) if v is not None else v


class ServiceResponse(BaseModel):
    """Schema for service response"""

    id: str
    name: str
    category: str
    description: Optional[str] = None
    basePrice: float
    pricingModel: str
    professionalTypes: List[str]
    isActive: bool
