"""
Data processing functions for incoming forms and outgoing documents.
"""
import json
import logging
import math
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId

from errors import ValidationError
from models import BOOKING_UPDATABLE_FIELDS

logger = logging.getLogger(__name__)

BOOKING_CODE_ALPHABET = string.digits + string.ascii_uppercase


def parse_object_id(value: str, label: str) -> ObjectId:
    """Parse a path identifier, e.g. parse_object_id(id, "owner")."""
    if not value or not ObjectId.is_valid(value):
        raise ValidationError(f"Invalid {label} ID format")
    return ObjectId(value)


def utc_now() -> datetime:
    """Get current UTC datetime with timezone awareness."""
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # The driver hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return _as_utc(value).isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict) -> dict:
    """Convert a stored document to JSON-safe values and expose `id` next to `_id`."""
    serialized = {k: serialize_value(v) for k, v in doc.items()}
    if "_id" in serialized:
        serialized["id"] = serialized["_id"]
    return serialized


def parse_float(value) -> Optional[float]:
    """Parse a value to float, returning None if parsing fails or the value is not finite."""
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (ValueError, TypeError):
        return None
    return parsed if math.isfinite(parsed) else None


def parse_int(value) -> Optional[int]:
    """Parse a value to int, returning None if parsing fails."""
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return None


def parse_date(value) -> Optional[datetime]:
    """
    Parse an ISO date or datetime string into a timezone-aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Failed to parse date '{value}'")
        return None
    return _as_utc(parsed)


def form_text(form, key: str) -> str:
    """Get a trimmed text field from a multipart form, '' when absent."""
    value = form.get(key)
    if value is None or not isinstance(value, str):
        return ""
    return value.strip()


def collect_features(form) -> List[str]:
    """
    Collect the repeated `features` entries of a form.

    Values are trimmed, empty entries dropped and duplicates removed while
    keeping first-seen order. When no `features` entry is present a
    `featuresJson` array is used instead.
    """
    features: List[str] = []
    for value in form.getlist("features"):
        if not isinstance(value, str):
            continue
        feature = value.strip()
        if feature and feature not in features:
            features.append(feature)

    if not features:
        features_json = form_text(form, "featuresJson")
        if features_json:
            try:
                parsed = json.loads(features_json)
            except json.JSONDecodeError as e:
                logger.warning(f"Failed to parse featuresJson: {e}")
                parsed = []
            if isinstance(parsed, list):
                for value in parsed:
                    feature = str(value).strip()
                    if feature and feature not in features:
                        features.append(feature)
    return features


def collect_schedule(form) -> List[Dict[str, datetime]]:
    """
    Collect schedule dates from repeated `schedule` entries and/or a
    `scheduleJson` array of `{"date": ...}` objects. Unparseable dates are skipped.
    """
    schedule: List[Dict[str, datetime]] = []
    for value in form.getlist("schedule"):
        date = parse_date(value) if isinstance(value, str) else None
        if date is not None:
            schedule.append({"date": date})

    schedule_json = form_text(form, "scheduleJson")
    if schedule_json:
        try:
            parsed = json.loads(schedule_json)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse scheduleJson: {e}")
            parsed = []
        if isinstance(parsed, list):
            for item in parsed:
                raw = item.get("date") if isinstance(item, dict) else item
                date = parse_date(raw)
                if date is not None:
                    schedule.append({"date": date})
    return schedule


def generate_booking_code() -> str:
    """Human-readable booking code: BK + epoch milliseconds + 4 random characters."""
    suffix = "".join(random.choice(BOOKING_CODE_ALPHABET) for _ in range(4))
    return f"BK{int(time.time() * 1000)}{suffix}"


def filter_booking_updates(body: dict) -> dict:
    """
    Keep only the booking fields an admin may change.
    Returns a new dictionary; unknown keys are dropped silently.
    """
    return {key: body[key] for key in BOOKING_UPDATABLE_FIELDS if key in body}


def build_customer_summaries(bookings: Iterable[dict], recent_limit: int = 3) -> List[dict]:
    """
    Group bookings by customer email into per-customer summaries.

    - totalBookings: every booking of the customer
    - activeBookings: bookings still pending or confirmed
    - totalSpent: sum of totalAmount over bookings that were not cancelled
    - lastBookingDate: latest pickup date
    - recentBookings: the latest `recent_limit` bookings (car model, pickup date, status)
    """
    grouped: Dict[str, Dict[str, Any]] = {}

    for booking in bookings:
        info = booking.get("customerInfo") or {}
        email = (info.get("email") or "").strip().lower()
        if not email:
            continue

        summary = grouped.get(email)
        if summary is None:
            summary = {
                "name": info.get("fullName"),
                "email": email,
                "phone": info.get("phone"),
                "totalBookings": 0,
                "activeBookings": 0,
                "totalSpent": 0.0,
                "lastBookingDate": None,
                "_bookings": [],
            }
            grouped[email] = summary

        status = booking.get("status")
        summary["totalBookings"] += 1
        if status in ("pending", "confirmed"):
            summary["activeBookings"] += 1
        if status != "cancelled":
            summary["totalSpent"] += float(booking.get("totalAmount") or 0.0)

        pickup = booking.get("pickupDate")
        pickup = _as_utc(pickup) if isinstance(pickup, datetime) else None
        if pickup is not None and (summary["lastBookingDate"] is None or pickup > summary["lastBookingDate"]):
            summary["lastBookingDate"] = pickup
            # Contact details follow the most recent booking
            summary["name"] = info.get("fullName") or summary["name"]
            summary["phone"] = info.get("phone") or summary["phone"]

        summary["_bookings"].append((pickup, booking))

    oldest = datetime.min.replace(tzinfo=timezone.utc)
    summaries = []
    for summary in grouped.values():
        ordered = sorted(summary.pop("_bookings"), key=lambda item: item[0] or oldest, reverse=True)
        summary["recentBookings"] = [
            {
                "bookingId": booking.get("bookingId"),
                "carModel": booking.get("model"),
                "date": pickup,
                "status": booking.get("status"),
            }
            for pickup, booking in ordered[:recent_limit]
        ]
        summaries.append(summary)

    summaries.sort(key=lambda s: s["lastBookingDate"] or oldest, reverse=True)
    return [serialize_value(s) for s in summaries]
