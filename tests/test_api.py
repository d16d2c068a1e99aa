"""HTTP-level tests through FastAPI's TestClient."""

from conftest import (
    ORIGIN_LAT,
    ORIGIN_LON,
    auth_headers,
    future,
    make_booking,
    make_professional,
    make_service,
)

CUSTOMER = auth_headers("customer-1", "customer")
ADMIN = auth_headers("admin-1", "admin")


def booking_body(service_id, **overrides):
    body = {
        "serviceId": service_id,
        "location": {"type": "Point", "coordinates": [ORIGIN_LON, ORIGIN_LAT]},
        "scheduledDate": future().isoformat(),
    }
    body.update(overrides)
    return body


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


class TestServices:
    def test_admin_creates_and_anyone_lists(self, client):
        resp = client.post(
            "/services",
            json={"name": "Pipe repair", "category": "Plumbing", "basePrice": 450},
            headers=ADMIN,
        )
        assert resp.status_code == 201
        assert resp.json()["category"] == "plumbing"

        listed = client.get("/services", params={"category": "plumbing"}).json()
        assert [s["name"] for s in listed] == ["Pipe repair"]

    def test_customer_cannot_create(self, client):
        resp = client.post(
            "/services", json={"name": "x", "category": "plumbing", "basePrice": 1}, headers=CUSTOMER
        )
        assert resp.status_code == 403

    def test_negative_price(self, client):
        resp = client.post(
            "/services", json={"name": "x", "category": "plumbing", "basePrice": -5}, headers=ADMIN
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Base price cannot be negative"

    def test_admin_updates_service(self, client, db):
        service = make_service(db, base_price=500)
        resp = client.put(
            f"/services/{service.id}",
            json={"basePrice": 650, "professionalTypes": [" Plumbing ", "plumbing", "Electrical"]},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["basePrice"] == 650
        assert body["professionalTypes"] == ["plumbing", "electrical"]
        assert body["name"] == "Plumbing repair"

    def test_deactivated_service_leaves_the_catalog(self, client, db):
        service = make_service(db)
        resp = client.put(f"/services/{service.id}", json={"isActive": False}, headers=ADMIN)
        assert resp.json()["isActive"] is False
        assert client.get("/services").json() == []

    def test_update_unknown_service(self, client):
        resp = client.put("/services/missing", json={"basePrice": 1}, headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Service template not found"

    def test_customer_cannot_update(self, client, db):
        service = make_service(db)
        resp = client.put(f"/services/{service.id}", json={"basePrice": 1}, headers=CUSTOMER)
        assert resp.status_code == 403

    def test_update_rejects_negative_price(self, client, db):
        service = make_service(db)
        resp = client.put(f"/services/{service.id}", json={"basePrice": -1}, headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Base price cannot be negative"


class TestCreateBooking:
    def test_created_and_dispatched_in_background(self, client, db, gateway):
        service = make_service(db, base_price=500)
        pro = make_professional(db)

        resp = client.post("/bookings", json=booking_body(service.id), headers=CUSTOMER)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "pending"
        assert body["totalAmount"] == 500
        assert body["service"]["category"] == "plumbing"
        assert [user for user, _, _ in gateway.sent] == [pro.id]

    def test_missing_fields(self, client, db):
        resp = client.post("/bookings", json={"serviceId": "x"}, headers=CUSTOMER)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing required fields"

    def test_unknown_service(self, client):
        resp = client.post("/bookings", json=booking_body("does-not-exist"), headers=CUSTOMER)
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Service not found"

    def test_bad_coordinates(self, client, db):
        service = make_service(db)
        body = booking_body(service.id, location={"coordinates": [500, 10]})
        resp = client.post("/bookings", json=body, headers=CUSTOMER)
        assert resp.status_code == 400

    def test_requires_token(self, client):
        assert client.post("/bookings", json={}).status_code == 401

    def test_professional_cannot_book(self, client, db):
        service = make_service(db)
        resp = client.post(
            "/bookings", json=booking_body(service.id), headers=auth_headers("p1", "professional")
        )
        assert resp.status_code == 403

    def test_emergency(self, client, db):
        service = make_service(db)
        make_professional(db, name="near", lat_offset=0.01)
        make_professional(db, name="far", lat_offset=0.1)

        resp = client.post("/bookings/emergency", json=booking_body(service.id), headers=CUSTOMER)
        assert resp.status_code == 201
        assert resp.json()["notifiedCount"] == 1


class TestLifecycle:
    def test_accept_then_complete(self, client, db):
        service = make_service(db)
        p1 = make_professional(db, name="P1")
        p2 = make_professional(db, name="P2")
        booking = make_booking(db, service, customer_id="customer-1")

        resp = client.post(
            "/bookings/accept", json={"bookingId": booking.id}, headers=auth_headers(p1.id, "professional")
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"

        resp = client.post(
            "/bookings/accept", json={"bookingId": booking.id}, headers=auth_headers(p2.id, "professional")
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Booking already processed"

        # Only the customer sees the code
        code = client.get(f"/bookings/{booking.id}", headers=CUSTOMER).json()["verificationCode"]
        pro_view = client.get(f"/bookings/{booking.id}", headers=auth_headers(p1.id, "professional"))
        assert pro_view.json()["verificationCode"] is None

        resp = client.post(
            f"/bookings/{booking.id}/complete",
            json={"verificationCode": code},
            headers=auth_headers(p1.id, "professional"),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

    def test_wrong_code(self, client, db):
        pro = make_professional(db)
        booking = make_booking(db, make_service(db))
        headers = auth_headers(pro.id, "professional")
        client.post("/bookings/accept", json={"bookingId": booking.id}, headers=headers)

        wrong = "000000" if booking.verification_code != "000000" else "111111"
        resp = client.post(f"/bookings/{booking.id}/complete", json={"verificationCode": wrong}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid verification code"

    def test_numeric_code_is_rejected(self, client, db):
        pro = make_professional(db)
        booking = make_booking(db, make_service(db))
        headers = auth_headers(pro.id, "professional")
        client.post("/bookings/accept", json={"bookingId": booking.id}, headers=headers)

        resp = client.post(
            f"/bookings/{booking.id}/complete",
            json={"verificationCode": int(booking.verification_code)},
            headers=headers,
        )
        assert resp.status_code == 400
        db.refresh(booking)
        assert booking.status == "accepted"

    def test_stranger_gets_403(self, client, db):
        booking = make_booking(db, make_service(db))
        resp = client.get(f"/bookings/{booking.id}", headers=auth_headers("someone-else", "customer"))
        assert resp.status_code == 403

    def test_chat_relay(self, client, db, fake_redis):
        pro = make_professional(db)
        booking = make_booking(db, make_service(db), customer_id="customer-1")
        pro_headers = auth_headers(pro.id, "professional")
        client.post("/bookings/accept", json={"bookingId": booking.id}, headers=pro_headers)

        resp = client.post(f"/bookings/{booking.id}/messages", json={"message": " On my way "}, headers=pro_headers)
        assert resp.status_code == 200
        assert resp.json()["recipientId"] == "customer-1"
        assert resp.json()["message"] == "On my way"

        resp = client.post(f"/bookings/{booking.id}/messages", json={"message": "Thanks"}, headers=CUSTOMER)
        assert resp.json()["recipientId"] == pro.id

        channels = [channel for channel, message in fake_redis.published if '"new_message"' in message]
        assert channels == ["realtime:user_customer-1", f"realtime:user_{pro.id}"]

    def test_chat_relay_rejects_non_parties(self, client, db, fake_redis):
        pro = make_professional(db)
        booking = make_booking(db, make_service(db), customer_id="customer-1")
        client.post("/bookings/accept", json={"bookingId": booking.id}, headers=auth_headers(pro.id, "professional"))

        resp = client.post(
            f"/bookings/{booking.id}/messages",
            json={"message": "hello"},
            headers=auth_headers("someone-else", "customer"),
        )
        assert resp.status_code == 403
        assert not [m for _, m in fake_redis.published if '"new_message"' in m]

    def test_blank_chat_message(self, client, db):
        booking = make_booking(db, make_service(db), customer_id="customer-1")
        resp = client.post(f"/bookings/{booking.id}/messages", json={"message": "   "}, headers=CUSTOMER)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Message cannot be empty"

    def test_reschedule_cancel_and_history(self, client, db):
        booking = make_booking(db, make_service(db), customer_id="customer-1")

        resp = client.post(
            f"/bookings/{booking.id}/reschedule",
            json={"newDate": future(48).isoformat(), "reason": "travel"},
            headers=CUSTOMER,
        )
        assert resp.status_code == 200
        assert resp.json()["reschedulingHistory"][0]["reason"] == "travel"

        assert client.get("/bookings/active", headers=CUSTOMER).json()["id"] == booking.id

        resp = client.post(f"/bookings/{booking.id}/cancel", json={"reason": "no longer needed"}, headers=CUSTOMER)
        assert resp.json()["status"] == "cancelled"

        assert client.get("/bookings/active", headers=CUSTOMER).json() is None
        history = client.get("/bookings/history", headers=CUSTOMER).json()
        assert [b["id"] for b in history] == [booking.id]

    def test_phase_and_tracking(self, client, db):
        pro = make_professional(db)
        booking = make_booking(db, make_service(db), customer_id="customer-1")
        headers = auth_headers(pro.id, "professional")
        client.post("/bookings/accept", json={"bookingId": booking.id}, headers=headers)

        resp = client.post(f"/bookings/{booking.id}/phase", json={"phase": "en_route"}, headers=headers)
        assert resp.json()["status"] == "assigned"

        ping = {"latitude": ORIGIN_LAT + 0.1, "longitude": ORIGIN_LON, "bookingId": booking.id}
        snapshot = client.put("/professionals/location", json=ping, headers=headers).json()
        assert snapshot["etaMinutes"] == 22

        tracking = client.get(f"/bookings/{booking.id}/tracking", headers=CUSTOMER).json()
        assert tracking["status"] == "assigned"
        assert tracking["phase"] == "en_route"
        assert tracking["etaMinutes"] == 22


class TestProfessionals:
    def test_location_out_of_range(self, client, db):
        pro = make_professional(db)
        resp = client.put(
            "/professionals/location",
            json={"latitude": 91, "longitude": 0},
            headers=auth_headers(pro.id, "professional"),
        )
        assert resp.status_code == 400

    def test_nearby_with_comma_separated_specializations(self, client, db):
        make_professional(db, name="plumber", specializations=("plumbing",), lat_offset=0.01)
        make_professional(db, name="painter", specializations=("painting",))
        make_professional(db, name="electrician", specializations=("electrical",))

        resp = client.get(
            "/professionals/nearby",
            params={
                "latitude": ORIGIN_LAT,
                "longitude": ORIGIN_LON,
                "specializations": "painting,plumbing",
            },
            headers=CUSTOMER,
        )
        assert [p["name"] for p in resp.json()] == ["painter", "plumber"]

    def test_offline(self, client, db):
        pro = make_professional(db)
        resp = client.post("/professionals/offline", headers=auth_headers(pro.id, "professional"))
        assert resp.json()["isOnline"] is False
