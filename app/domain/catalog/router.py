"""Service catalog router - FastAPI endpoints for bookable services"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ...auth import Actor, require_admin
from ...database import get_db, transaction
from ...models import Service
from .repository import ServiceRepository
from .schemas import ServiceCreate, ServiceResponse, ServiceUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/services", tags=["Services"])


def to_response(service: Service) -> ServiceResponse:
    return ServiceResponse(
        id=service.id,
        name=service.name,
        category=service.category,
        description=service.description,
        basePrice=service.base_price,
        pricingModel=service.pricing_model,
        professionalTypes=service.professional_types or [],
        isActive=service.is_active,
    )


@router.get("", response_model=list[ServiceResponse])
async def list_services(category: Optional[str] = None, db: Session = Depends(get_db)):
    """Active catalog services, optionally filtered by category"""
    return [to_response(s) for s in ServiceRepository.list_services(db, category)]


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreate,
    admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    with transaction(db):
        service = ServiceRepository.create(
            db,
            name=data.name,
            category=data.category,
            base_price=data.basePrice,
            description=data.description,
            pricing_model=data.pricingModel,
            professional_types=data.professionalTypes,
        )
    logger.info(f"✅ Service {service.id} ({service.category}) created by admin {admin.id}")
    return to_response(service)


@router.put("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: str,
    data: ServiceUpdate,
    admin: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    with transaction(db):
        service = ServiceRepository.update(
            db,
            service_id,
            name=data.name,
            category=data.category,
            base_price=data.basePrice,
            description=data.description,
            pricing_model=data.pricingModel,
            professional_types=data.professionalTypes,
            is_active=data.isActive,
        )
    logger.info(f"✏️ Service {service_id} updated by admin {admin.id}")
    return to_response(service)
