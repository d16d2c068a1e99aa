"""Shared fixtures: a fresh SQLite database per test, fake Redis and push, JWT headers"""

import os
import tempfile

# Must be set before the app modules read their configuration
_DB_DIR = tempfile.mkdtemp(prefix="dispatch-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'dispatch.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["FIREBASE_CREDENTIALS_PATH"] = ""
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app import cache as cache_module  # noqa: E402
from app.auth import create_jwt_token  # noqa: E402
from app.cache import Cache  # noqa: E402
from app.database import Base, SessionLocal, engine  # noqa: E402
from app.domain.bookings import router as bookings_router  # noqa: E402
from app.domain.bookings.service import DispatchCoordinator  # noqa: E402
from app.domain.catalog.repository import ServiceRepository  # noqa: E402
from app.domain.professionals import router as professionals_router  # noqa: E402
from app.domain.professionals.repository import ProfessionalRegistry  # noqa: E402
from app.domain.tracking.service import TrackingService  # noqa: E402
from app.main import app  # noqa: E402
from app.models import utcnow  # noqa: E402
from app.services.realtime import RealtimeBus  # noqa: E402

# Customer destination used throughout (Bangalore); 0.01 degrees of latitude is about 1.1km
ORIGIN_LON = 77.5946
ORIGIN_LAT = 12.9716


class FakeRedis:
    """In-memory stand-in for the few Redis commands the app uses"""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.published = []

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, key):
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


class FakeGateway:
    """Records pushes; set fail=True to make every push raise"""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_push_notification(self, user_id, notification, priority="normal"):
        if self.fail:
            raise RuntimeError("FCM unavailable")
        self.sent.append((user_id, notification, priority))
        return True


class FakeGeocoder:
    def __init__(self, result=None):
        self.result = result
        self.calls = []

    async def geocode(self, address):
        self.calls.append(address)
        return self.result


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache_module, "cache", Cache(client_factory=lambda: fake))
    return fake


@pytest.fixture
def realtime(fake_redis):
    return RealtimeBus(client_factory=lambda: fake_redis)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def geocoder():
    return FakeGeocoder()


@pytest.fixture
def coordinator(db, gateway, realtime, geocoder):
    return DispatchCoordinator(
        db, gateway=gateway, realtime=realtime, geocoder=geocoder, session_factory=SessionLocal
    )


@pytest.fixture
def tracking(db, realtime, coordinator):
    return TrackingService(db, realtime=realtime, coordinator=coordinator)


@pytest.fixture
def client(gateway, realtime, geocoder):
    def coordinator_override():
        session = SessionLocal()
        try:
            yield DispatchCoordinator(
                session,
                gateway=gateway,
                realtime=realtime,
                geocoder=geocoder,
                session_factory=SessionLocal,
            )
        finally:
            session.close()

    def tracking_override():
        session = SessionLocal()
        try:
            coord = DispatchCoordinator(session, gateway=gateway, realtime=realtime, geocoder=geocoder)
            yield TrackingService(session, realtime=realtime, coordinator=coord)
        finally:
            session.close()

    app.dependency_overrides[bookings_router.get_dispatch_coordinator] = coordinator_override
    app.dependency_overrides[professionals_router.get_tracking_service] = tracking_override
    return TestClient(app)


def auth_headers(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_jwt_token(user_id, role)}"}


def make_service(db, category="plumbing", base_price=500.0, professional_types=None, name=None):
    service = ServiceRepository.create(
        db,
        name=name or f"{category.title()} repair",
        category=category,
        base_price=base_price,
        professional_types=professional_types,
    )
    db.commit()
    return service


def make_professional(
    db,
    name="Pro",
    specializations=("plumbing",),
    lat_offset=0.0,
    lon_offset=0.0,
    verified=True,
    online=True,
    rating=4.0,
    accepting_jobs=True,
):
    professional = ProfessionalRegistry.create(
        db,
        name=name,
        specializations=specializations,
        verification_status="verified" if verified else "under_review",
        rating_average=rating,
    )
    if online:
        ProfessionalRegistry.update_location(
            db,
            professional.id,
            latitude=ORIGIN_LAT + lat_offset,
            longitude=ORIGIN_LON + lon_offset,
            accepting_jobs=accepting_jobs,
        )
    db.commit()
    return professional


def make_booking(db, service, customer_id="customer-1", is_emergency=False, scheduled_in_hours=24):
    from app.domain.bookings.repository import BookingStore

    booking = BookingStore.create(
        db,
        customer_id=customer_id,
        service=service,
        coordinates=[ORIGIN_LON, ORIGIN_LAT],
        scheduled_date=utcnow() + timedelta(hours=scheduled_in_hours),
        is_emergency=is_emergency,
    )
    db.commit()
    return booking


def future(hours=24) -> datetime:
    return utcnow() + timedelta(hours=hours)
