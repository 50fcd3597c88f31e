import json
import re

import pytest
from bson import ObjectId


@pytest.fixture
def booking_payload(create_car):
    car_id = create_car("KCA 123B")

    def _payload(**overrides):
        payload = {
            "carId": car_id,
            "registrationNumber": "KCA 123B",
            "model": "Toyota Corolla",
            "pickupDate": "2025-01-05",
            "returnDate": "2025-01-10",
            "totalAmount": 22500,
            "customerInfo": {
                "fullName": "Peter Otieno",
                "email": "Peter.Otieno@example.com",
                "phone": "+254711000222",
                "idNumber": "12345678",
            },
        }
        payload.update(overrides)
        return payload

    return _payload


def create_booking(client, payload):
    response = client.post("/booking", json=payload)
    assert response.status_code == 201, response.json()
    return response.json()["data"]


def test_create_booking(client, booking_payload):
    data = create_booking(client, booking_payload(specialRequests="  Child seat  "))

    assert re.match(r"^BK\d+[0-9A-Z]{4}$", data["bookingId"])
    assert data["status"] == "pending"
    assert data["customerInfo"]["email"] == "peter.otieno@example.com"
    assert data["specialRequests"] == "Child seat"
    assert data["pickupDate"].startswith("2025-01-05")
    assert data["totalAmount"] == 22500


def test_create_booking_rejects_pickup_after_return(client, booking_payload):
    response = client.post("/booking", json=booking_payload(pickupDate="2025-01-10", returnDate="2025-01-05"))

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Pickup date must be before return date"}
    assert client.get("/booking").json()["count"] == 0


def test_create_booking_validation(client, booking_payload):
    no_customer = booking_payload()
    del no_customer["customerInfo"]
    cases = [
        (no_customer, "Missing required booking or customer information"),
        (booking_payload(model=""), "Missing required booking or customer information"),
        (booking_payload(totalAmount=-1), "Total amount cannot be negative"),
        (booking_payload(pickupDate="soon"), "Invalid pickup or return date"),
        (booking_payload(specialRequests="x" * 501), "Special requests cannot exceed 500 characters"),
    ]
    bad_email = booking_payload()
    bad_email["customerInfo"] = {**bad_email["customerInfo"], "email": "peter@"}
    cases.append((bad_email, "Please enter a valid email"))

    for payload, message in cases:
        response = client.post("/booking", json=payload)
        assert response.status_code == 400
        assert response.json()["error"] == message


def test_create_booking_rejects_non_finite_total(client, booking_payload):
    for total in (float("nan"), float("inf")):
        body = json.dumps(booking_payload(totalAmount=total))
        response = client.post("/booking", content=body, headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "Total amount must be a valid number"

    assert client.get("/booking").json()["count"] == 0
    assert client.get("/customers").json()["count"] == 0


def test_create_booking_for_unknown_car(client, booking_payload):
    assert client.post("/booking", json=booking_payload(carId=str(ObjectId()))).status_code == 404
    assert client.post("/booking", json=booking_payload(carId="123")).status_code == 400


def test_booking_status_flow(client, booking_payload):
    booking_id = create_booking(client, booking_payload())["_id"]

    confirmed = client.patch(f"/booking/{booking_id}", json={"status": "confirmed"})
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["status"] == "confirmed"

    completed = client.patch(f"/booking/{booking_id}", json={"status": "completed"})
    assert completed.status_code == 200
    assert completed.json()["data"]["status"] == "completed"

    back = client.patch(f"/booking/{booking_id}", json={"status": "pending"})
    assert back.status_code == 400
    assert back.json()["error"] == "Cannot change booking status from completed to pending"


def test_cancelled_booking_is_terminal(client, booking_payload):
    booking_id = create_booking(client, booking_payload())["_id"]

    assert client.patch(f"/booking/{booking_id}", json={"status": "cancelled"}).status_code == 200
    assert client.patch(f"/booking/{booking_id}", json={"status": "confirmed"}).status_code == 400
    # same status again is accepted
    assert client.patch(f"/booking/{booking_id}", json={"status": "cancelled"}).status_code == 200


def test_pending_booking_cannot_jump_to_completed(client, booking_payload):
    booking_id = create_booking(client, booking_payload())["_id"]
    assert client.patch(f"/booking/{booking_id}", json={"status": "completed"}).status_code == 400


def test_update_booking_field_rules(client, booking_payload):
    booking_id = create_booking(client, booking_payload())["_id"]

    assert client.patch(f"/booking/{booking_id}", json={"status": "lost"}).json()["error"] == "Invalid status value"
    assert client.patch(f"/booking/{booking_id}", json={"totalAmount": 1}).json()["error"] == "No valid fields to update"

    reversed_dates = client.patch(
        f"/booking/{booking_id}", json={"pickupDate": "2025-02-10", "returnDate": "2025-02-01"})
    assert reversed_dates.status_code == 400

    # a single date is not compared with the stored one
    only_pickup = client.patch(f"/booking/{booking_id}", json={"pickupDate": "2025-03-01"})
    assert only_pickup.status_code == 200
    assert only_pickup.json()["data"]["pickupDate"].startswith("2025-03-01")


def test_update_booking_ignores_unlisted_fields(client, booking_payload):
    booking_id = create_booking(client, booking_payload())["_id"]

    response = client.patch(f"/booking/{booking_id}", json={"specialRequests": "Airport drop-off", "totalAmount": 1})

    data = response.json()["data"]
    assert data["specialRequests"] == "Airport drop-off"
    assert data["totalAmount"] == 22500


def test_delete_booking(client, booking_payload):
    booking_id = create_booking(client, booking_payload())["_id"]

    deleted = client.delete(f"/booking/{booking_id}")
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"message": "Booking deleted successfully"}

    assert client.get(f"/booking/{booking_id}").status_code == 404
    assert client.patch(f"/booking/{booking_id}", json={"status": "confirmed"}).status_code == 404
