"""Service catalog repository - Database operations for bookable services"""

from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...models import Service
from ...shared.exceptions import NotFoundError
from ...shared.validators import normalize_specializations


class ServiceRepository:
    """Repository for service database operations"""

    @staticmethod
    def list_services(db: Session, category: Optional[str] = None, include_inactive: bool = False):
        query = db.query(Service)
        if not include_inactive:
            query = query.filter(Service.is_active.is_(True))
        if category:
            query = query.filter(Service.category == category)
        return query.order_by(Service.category, Service.name).all()

    @staticmethod
    def get(db: Session, service_id: str) -> Optional[Service]:
        return db.query(Service).filter(Service.id == service_id).first()

    @staticmethod
    def require_active(db: Session, service_id: str) -> Service:
        """
        Raises:
            NotFoundError: If the service does not exist or is inactive
        """
        service = ServiceRepository.get(db, service_id)
        if not service or not service.is_active:
            raise NotFoundError("Service not found")
        return service

    @staticmethod
    def create(
        db: Session,
        name: str,
        category: str,
        base_price: float,
        description: Optional[str] = None,
        pricing_model: str = "fixed",
        professional_types: Optional[Iterable[str]] = None,
    ) -> Service:
        """Create a service. Flushes but does not commit."""
        service = Service(
            name=name,
            category=category,
            base_price=base_price,
            description=description,
            pricing_model=pricing_model,
            professional_types=normalize_specializations(professional_types),
            is_active=True,
        )
        db.add(service)
        db.flush()
        return service

    @staticmethod
    def update(db: Session, service_id: str, **updates) -> Service:
        """
        Update a service with the provided fields; None values are skipped.
        Flushes but does not commit.

        Raises:
            NotFoundError: If the service does not exist
        """
        service = ServiceRepository.get(db, service_id)
        if not service:
            raise NotFoundError("Service template not found")

        if updates.get("professional_types") is not None:
            updates["professional_types"] = normalize_specializations(updates["professional_types"])
        for key, value in updates.items():
            if value is not None and hasattr(service, key):
                setattr(service, key, value)

        db.flush()
        return service
