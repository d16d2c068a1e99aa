"""Tests for ProfessionalRegistry: location pings, history cap, candidates, assignment."""

from datetime import timedelta

import pytest
from conftest import ORIGIN_LAT, ORIGIN_LON, make_booking, make_professional, make_service

from app.database import transaction
from app.domain.professionals.repository import (
    LOCATION_HISTORY_LIMIT,
    Assignment,
    ProfessionalRegistry,
)
from app.models import ProfessionalLocation, utcnow
from app.shared.exceptions import ConflictError, NotFoundError, ValidationError
from app.shared.geo import GeoPoint

ORIGIN = GeoPoint(longitude=ORIGIN_LON, latitude=ORIGIN_LAT)


class TestUpdateLocation:
    def test_sets_location_and_online(self, db):
        pro = make_professional(db, online=False)
        ProfessionalRegistry.update_location(db, pro.id, latitude=10.5, longitude=20.25, accuracy=5)
        db.commit()

        db.refresh(pro)
        assert (pro.latitude, pro.longitude) == (10.5, 20.25)
        assert pro.is_online
        assert len(ProfessionalRegistry.location_history(db, pro.id)) == 1

    @pytest.mark.parametrize("lat, lon", [(91, 0), (-90.5, 0), (0, 181), (0, -180.1), (None, 0)])
    def test_out_of_range_changes_nothing(self, db, lat, lon):
        pro = make_professional(db)
        before = (pro.latitude, pro.longitude)

        with pytest.raises(ValidationError):
            ProfessionalRegistry.update_location(db, pro.id, latitude=lat, longitude=lon)
        db.rollback()

        db.refresh(pro)
        assert (pro.latitude, pro.longitude) == before
        assert len(ProfessionalRegistry.location_history(db, pro.id)) == 1

    def test_unknown_professional(self, db):
        with pytest.raises(NotFoundError):
            ProfessionalRegistry.update_location(db, "missing", latitude=1, longitude=1)

    def test_history_capped_with_oldest_evicted(self, db):
        pro = make_professional(db, online=False)
        start = utcnow() - timedelta(hours=1)
        for i in range(LOCATION_HISTORY_LIMIT + 5):
            ProfessionalRegistry.update_location(
                db, pro.id, latitude=1 + i / 1000, longitude=1, timestamp=start + timedelta(seconds=i)
            )
        db.commit()

        history = ProfessionalRegistry.location_history(db, pro.id, limit=1000)
        assert len(history) == LOCATION_HISTORY_LIMIT
        # Newest first; the first five pings were evicted
        assert history[0].recorded_at == start + timedelta(seconds=LOCATION_HISTORY_LIMIT + 4)
        assert history[-1].recorded_at == start + timedelta(seconds=5)

    def test_older_ping_does_not_overwrite_location(self, db):
        pro = make_professional(db, online=False)
        now = utcnow()
        ProfessionalRegistry.update_location(db, pro.id, latitude=10, longitude=1, timestamp=now)
        ProfessionalRegistry.update_location(
            db, pro.id, latitude=20, longitude=1, timestamp=now - timedelta(minutes=5)
        )
        db.commit()

        db.refresh(pro)
        assert pro.latitude == 10
        assert pro.location_timestamp == now
        assert pro.is_online
        history = ProfessionalRegistry.location_history(db, pro.id)
        assert [h.latitude for h in history] == [10, 20]

    def test_duplicate_timestamp_adds_no_history(self, db):
        pro = make_professional(db, online=False)
        ts = utcnow()
        ProfessionalRegistry.update_location(db, pro.id, latitude=1, longitude=1, timestamp=ts)
        ProfessionalRegistry.update_location(db, pro.id, latitude=1, longitude=1, timestamp=ts)
        db.commit()
        assert db.query(ProfessionalLocation).filter_by(professional_id=pro.id).count() == 1


class TestFindCandidates:
    def test_only_verified_available_online_matching(self, db):
        good = make_professional(db, name="good", lat_offset=0.01)
        make_professional(db, name="unverified", verified=False, lat_offset=0.01)
        make_professional(db, name="offline", online=False)
        make_professional(db, name="electrician", specializations=("electrical",))
        make_professional(db, name="not-accepting", accepting_jobs=False)
        busy = make_professional(db, name="busy")
        with transaction(db):
            ProfessionalRegistry.set_assignment(db, busy.id, Assignment("some-booking"))

        found = ProfessionalRegistry.find_candidates(db, ["plumbing"], ORIGIN, 15_000, None)
        assert [c.professional.id for c in found] == [good.id]

    def test_distance_order_and_rating_tiebreak(self, db):
        far = make_professional(db, name="far", lat_offset=0.05)
        near_low = make_professional(db, name="near-low", lat_offset=0.01, rating=3.0)
        near_high = make_professional(db, name="near-high", lat_offset=0.01, rating=4.8)
        make_professional(db, name="outside", lat_offset=0.2)

        found = ProfessionalRegistry.find_candidates(db, ["plumbing"], ORIGIN, 15_000, None)
        assert [c.professional.id for c in found] == [near_high.id, near_low.id, far.id]
        distances = [c.distance_km for c in found]
        assert distances == sorted(distances)
        for c in found:
            assert c.professional.is_available
            assert c.professional.verification_status == "verified"

    def test_limit(self, db):
        for i in range(4):
            make_professional(db, name=f"p{i}", lat_offset=0.001 * i)
        found = ProfessionalRegistry.find_candidates(db, ["plumbing"], ORIGIN, 15_000, 2)
        assert len(found) == 2


class TestAssignment:
    def test_second_assignment_conflicts(self, db):
        pro = make_professional(db)
        with transaction(db):
            ProfessionalRegistry.set_assignment(db, pro.id, Assignment("b1"))
        with pytest.raises(ConflictError) as exc:
            with transaction(db):
                ProfessionalRegistry.set_assignment(db, pro.id, Assignment("b2"))
        assert exc.value.message == "Professional not available"

        db.refresh(pro)
        assert pro.current_booking_id == "b1"
        assert not pro.is_available

    def test_clearing_restores_availability(self, db):
        pro = make_professional(db)
        with transaction(db):
            ProfessionalRegistry.set_assignment(db, pro.id, Assignment("b1"))
        with transaction(db):
            cleared = ProfessionalRegistry.set_assignment(db, pro.id, None, expected_booking_id="b1")
        assert cleared.is_available
        assert cleared.current_booking_id is None

    def test_clear_for_other_booking_leaves_assignment(self, db):
        pro = make_professional(db)
        with transaction(db):
            ProfessionalRegistry.set_assignment(db, pro.id, Assignment("b1"))
        with transaction(db):
            kept = ProfessionalRegistry.set_assignment(db, pro.id, None, expected_booking_id="b2")
        assert kept.current_booking_id == "b1"
        assert not kept.is_available


class TestAvailabilityAt:
    def test_overlapping_open_booking_blocks_slot(self, db):
        service = make_service(db)
        pro = make_professional(db)
        other = make_booking(db, service, scheduled_in_hours=48)
        with transaction(db):
            other.professional_id = pro.id
            other.status = "accepted"

        slot = other.scheduled_date + timedelta(minutes=30)
        assert not ProfessionalRegistry.is_available_at(db, pro.id, slot)
        assert ProfessionalRegistry.is_available_at(db, pro.id, slot, exclude_booking_id=other.id)
        assert ProfessionalRegistry.is_available_at(db, pro.id, other.scheduled_date + timedelta(hours=3))

    def test_unverified_is_never_available(self, db):
        pro = make_professional(db, verified=False)
        assert not ProfessionalRegistry.is_available_at(db, pro.id, utcnow() + timedelta(days=1))


def test_mark_offline(db):
    pro = make_professional(db)
    with transaction(db):
        updated = ProfessionalRegistry.mark_offline(db, pro.id)
    assert not updated.is_online
    assert ProfessionalRegistry.find_candidates(db, None, ORIGIN, 15_000, None) == []


class TestCreate:
    def test_phone_is_normalized(self, db):
        pro = ProfessionalRegistry.create(db, "Asha", ["Plumbing"], phone="+91 98450-12345")
        assert pro.phone == "+919845012345"
        assert pro.specializations == ["plumbing"]

    def test_short_phone(self, db):
        with pytest.raises(ValidationError):
            ProfessionalRegistry.create(db, "Asha", ["plumbing"], phone="12345")
