"""
API routes/endpoints for the application.

Each handler validates its input, delegates persistence to db_operations and
returns the `{success, data}` envelope. Failures are raised as AppError
subclasses and turned into `{success: false, error}` by the handlers in main.py.
"""
import logging
import math
import re
from typing import Optional, Tuple

from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

import db_operations
from api_client import destroy_image, public_id_from_url, upload_image
from config import CAR_IMAGE_FOLDER, CATEGORY_IMAGE_FOLDER
from data_processor import (
    build_customer_summaries,
    collect_features,
    collect_schedule,
    filter_booking_updates,
    form_text,
    generate_booking_code,
    parse_date,
    parse_float,
    parse_int,
    parse_object_id,
    serialize_doc,
    utc_now,
)
from errors import ConflictError, UpstreamError, ValidationError
from models import (
    BOOKING_STATUSES,
    BOOKING_TRANSITIONS,
    OWNER_STATUSES,
    SPECIAL_REQUESTS_MAX_LENGTH,
    BookingCreate,
    OwnerPayload,
)
from ownership import check_owner_uniqueness, parse_car_ids, validate_assignment

logger = logging.getLogger(__name__)

OWNER_EMAIL_PATTERN = re.compile(r"\S+@\S+\.\S+")
CUSTOMER_EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")

MAX_SEATS = 100


def _ok(data, status_code: int = 200, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data, **extra})


def _ok_list(docs) -> JSONResponse:
    return _ok([serialize_doc(doc) for doc in docs], count=len(docs))


async def _read_image(form) -> Optional[Tuple[bytes, str]]:
    """Return (bytes, filename) for a non-empty `image` upload, else None."""
    image = form.get("image")
    if not isinstance(image, UploadFile):
        return None
    data = await image.read()
    if not data:
        return None
    return data, image.filename or "upload"


async def _persist(write, image_url: Optional[str]):
    """
    Await a record write that references a freshly uploaded image.
    If the write fails the image is recorded as orphaned before re-raising.
    """
    try:
        return await write
    except Exception:
        await db_operations.record_orphaned_image(image_url, "record write failed")
        raise


# Cars

def _parse_car_fields(form) -> dict:
    text_fields = {
        name: form_text(form, name)
        for name in ("model", "type", "regestrationNumber", "location", "transmission", "fuel")
    }
    price_per_day = parse_float(form_text(form, "pricePerDay"))
    year = parse_int(form_text(form, "year"))
    seats = parse_int(form_text(form, "seats"))

    missing = [name for name, value in text_fields.items() if not value]
    missing += [
        name for name, value in (("pricePerDay", price_per_day), ("year", year), ("seats", seats))
        if value is None
    ]
    if missing:
        raise ValidationError(f"Missing or invalid required fields: {', '.join(missing)}")

    if price_per_day <= 0:
        raise ValidationError("Price per day must be a positive number")
    if year < 1900:
        raise ValidationError("Year must be a valid number (1900 or later)")
    latest_year = utc_now().year + 1
    if year > latest_year:
        raise ValidationError(f"Year cannot be later than {latest_year}")
    if seats < 1:
        raise ValidationError("Seats must be at least 1")
    if seats > MAX_SEATS:
        raise ValidationError(f"Seats cannot exceed {MAX_SEATS}")

    return {
        **text_fields,
        "pricePerDay": price_per_day,
        "year": year,
        "seats": seats,
        "features": collect_features(form),
        "schedule": collect_schedule(form),
    }


def _registration_taken(registration_number: str) -> ConflictError:
    return ConflictError(
        "regestrationNumber",
        registration_number,
        "A car with this registration number already exists.",
    )


async def list_cars_route():
    return _ok_list(await db_operations.list_cars())


async def get_car_route(car_id: str):
    car = await db_operations.get_car(parse_object_id(car_id, "car"))
    return _ok(serialize_doc(car))


async def create_car_route(form):
    """
    Create a car from a multipart form.

    Fields are validated and the registration number checked before the image
    is uploaded; the record is written only once the upload has succeeded.
    """
    fields = _parse_car_fields(form)

    if await db_operations.find_car_by_registration(fields["regestrationNumber"]):
        logger.warning(f"Rejected car with duplicate registration {fields['regestrationNumber']}")
        raise _registration_taken(fields["regestrationNumber"])

    image = await _read_image(form)
    if image is None:
        raise ValidationError("Image is required")

    uploaded = await upload_image(image[0], image[1], CAR_IMAGE_FOLDER)
    fields["image"] = uploaded["url"]

    car = await _persist(db_operations.insert_car(fields), uploaded["url"])
    return _ok(serialize_doc(car), status_code=201)


async def update_car_route(car_id: str, form):
    """
    Replace a car's fields from a multipart form.
    The stored image is kept unless a new, non-empty image is supplied.
    """
    oid = parse_object_id(car_id, "car")
    fields = _parse_car_fields(form)
    existing = await db_operations.get_car(oid)

    if await db_operations.find_car_by_registration(fields["regestrationNumber"], exclude_id=oid):
        raise _registration_taken(fields["regestrationNumber"])

    new_image_url = None
    image = await _read_image(form)
    if image is not None:
        uploaded = await upload_image(image[0], image[1], CAR_IMAGE_FOLDER)
        new_image_url = uploaded["url"]
        fields["image"] = new_image_url

    car = await _persist(db_operations.update_car(oid, fields), new_image_url)

    if new_image_url and existing.get("image") and existing["image"] != new_image_url:
        await db_operations.record_orphaned_image(existing["image"], "replaced")
    return _ok(serialize_doc(car))


async def delete_car_route(car_id: str):
    deleted = await db_operations.delete_car(parse_object_id(car_id, "car"))
    await db_operations.record_orphaned_image(deleted.get("image"), "car deleted")
    return _ok(serialize_doc(deleted))


# Categories

def _parse_category_fields(form) -> dict:
    fields = {
        "title": form_text(form, "title"),
        "description": form_text(form, "description"),
        "priceFrom": form_text(form, "priceFrom"),
        "features": collect_features(form),
        "popular": form_text(form, "popular").lower() == "true",
    }
    if not fields["title"] or not fields["description"] or not fields["priceFrom"] or not fields["features"]:
        raise ValidationError(
            "Missing required fields. Title, description, price, and at least one feature are required."
        )
    return fields


async def list_categories_route():
    return _ok_list(await db_operations.list_categories())


async def get_category_route(category_id: str):
    category = await db_operations.get_category(parse_object_id(category_id, "category"))
    return _ok(serialize_doc(category))


async def create_category_route(form):
    fields = _parse_category_fields(form)

    image = await _read_image(form)
    if image is None:
        raise ValidationError("Image is required")

    uploaded = await upload_image(image[0], image[1], CATEGORY_IMAGE_FOLDER)
    fields["image"] = uploaded["url"]

    category = await _persist(db_operations.insert_category(fields), uploaded["url"])
    return _ok(serialize_doc(category), status_code=201)


async def update_category_route(category_id: str, form):
    oid = parse_object_id(category_id, "category")
    fields = _parse_category_fields(form)
    existing = await db_operations.get_category(oid)

    new_image_url = None
    image = await _read_image(form)
    if image is not None:
        uploaded = await upload_image(image[0], image[1], CATEGORY_IMAGE_FOLDER)
        new_image_url = uploaded["url"]
        fields["image"] = new_image_url

    category = await _persist(db_operations.update_category(oid, fields), new_image_url)

    if new_image_url and existing.get("image") and existing["image"] != new_image_url:
        await db_operations.record_orphaned_image(existing["image"], "replaced")
    return _ok(serialize_doc(category))


async def delete_category_route(category_id: str):
    deleted = await db_operations.delete_category(parse_object_id(category_id, "category"))
    await db_operations.record_orphaned_image(deleted.get("image"), "category deleted")
    return _ok(serialize_doc(deleted))


# Car owners

def _owner_fields(payload: OwnerPayload) -> dict:
    values = {
        "name": (payload.name or "").strip(),
        "email": (payload.email or "").strip().lower(),
        "phone": (payload.phone or "").strip(),
        "location": (payload.location or "").strip(),
        "joinedDate": (payload.joinedDate or "").strip(),
    }
    if not all(values.values()):
        raise ValidationError("Missing required fields: name, email, phone, location, joinedDate")

    if not OWNER_EMAIL_PATTERN.search(values["email"]):
        raise ValidationError("Invalid email format")

    status = (payload.status or "active").strip()
    if status not in OWNER_STATUSES:
        raise ValidationError(f"Invalid status value. Allowed: {', '.join(OWNER_STATUSES)}")
    values["status"] = status
    return values


async def list_owners_route():
    return _ok_list(await db_operations.list_owners())


async def get_owner_route(owner_id: str):
    owner = await db_operations.get_owner(parse_object_id(owner_id, "owner"))
    return _ok(serialize_doc(owner))


async def create_owner_route(payload: OwnerPayload):
    fields = _owner_fields(payload)
    car_ids = parse_car_ids(payload.cars)

    await check_owner_uniqueness(None, fields["email"], fields["phone"])
    await validate_assignment(None, car_ids)

    owner = await db_operations.create_owner(fields, car_ids)
    return _ok(serialize_doc(owner), status_code=201, message="Car owner created successfully")


async def update_owner_route(owner_id: str, payload: OwnerPayload):
    oid = parse_object_id(owner_id, "owner")
    await db_operations.get_owner(oid, populate=False)

    fields = _owner_fields(payload)
    car_ids = parse_car_ids(payload.cars)

    await check_owner_uniqueness(oid, fields["email"], fields["phone"])
    await validate_assignment(oid, car_ids)

    owner = await db_operations.update_owner(oid, fields, car_ids)
    return _ok(serialize_doc(owner), message="Car owner updated successfully")


async def delete_owner_route(owner_id: str):
    deleted = await db_operations.delete_owner(parse_object_id(owner_id, "owner"))
    return _ok({"id": str(deleted["_id"])}, message="Car owner deleted successfully")


# Bookings

def _booking_dates(pickup_raw, return_raw):
    pickup_date = parse_date(pickup_raw)
    return_date = parse_date(return_raw)
    if pickup_date is None or return_date is None:
        raise ValidationError("Invalid pickup or return date")
    if pickup_date >= return_date:
        raise ValidationError("Pickup date must be before return date")
    return pickup_date, return_date


def _special_requests(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Special requests must be text")
    value = value.strip()
    if len(value) > SPECIAL_REQUESTS_MAX_LENGTH:
        raise ValidationError(f"Special requests cannot exceed {SPECIAL_REQUESTS_MAX_LENGTH} characters")
    return value


async def list_bookings_route():
    return _ok_list(await db_operations.list_bookings())


async def get_booking_route(booking_id: str):
    booking = await db_operations.get_booking(parse_object_id(booking_id, "booking"))
    return _ok(serialize_doc(booking))


async def create_booking_route(payload: BookingCreate):
    """
    Create a pending booking.

    Requires the car reference, its denormalized registration number and
    model, both dates (pickup strictly before return), the total amount and
    the full customer info block.
    """
    info = payload.customerInfo
    required = (
        payload.carId, payload.registrationNumber, payload.model,
        payload.pickupDate, payload.returnDate,
        info and info.fullName, info and info.email, info and info.phone, info and info.idNumber,
    )
    if not all(value and str(value).strip() for value in required) or payload.totalAmount is None:
        raise ValidationError("Missing required booking or customer information")

    if not math.isfinite(payload.totalAmount):
        raise ValidationError("Total amount must be a valid number")
    if payload.totalAmount < 0:
        raise ValidationError("Total amount cannot be negative")

    email = info.email.strip().lower()
    if not CUSTOMER_EMAIL_PATTERN.match(email):
        raise ValidationError("Please enter a valid email")

    pickup_date, return_date = _booking_dates(payload.pickupDate, payload.returnDate)

    car_id = parse_object_id(payload.carId, "car")
    await db_operations.get_car(car_id)

    booking = {
        "bookingId": generate_booking_code(),
        "carId": car_id,
        "registrationNumber": payload.registrationNumber.strip(),
        "model": payload.model.strip(),
        "pickupDate": pickup_date,
        "returnDate": return_date,
        "totalAmount": payload.totalAmount,
        "status": "pending",
        "customerInfo": {
            "fullName": info.fullName.strip(),
            "email": email,
            "phone": info.phone.strip(),
            "idNumber": info.idNumber.strip(),
        },
    }
    special_requests = _special_requests(payload.specialRequests)
    if special_requests:
        booking["specialRequests"] = special_requests

    created = await db_operations.insert_booking(booking)
    return _ok(serialize_doc(created), status_code=201)


async def update_booking_route(booking_id: str, body: dict):
    """
    Apply an admin change to a booking.

    Only status, specialRequests, pickupDate and returnDate are writable.
    Dates are compared only when both are supplied. Status changes must follow
    pending -> confirmed -> completed, or pending/confirmed -> cancelled;
    re-sending the current status is accepted.
    """
    oid = parse_object_id(booking_id, "booking")
    updates = filter_booking_updates(body)
    if not updates:
        raise ValidationError("No valid fields to update")

    new_status = updates.get("status")
    if "status" in updates and new_status not in BOOKING_STATUSES:
        raise ValidationError("Invalid status value")

    for key in ("pickupDate", "returnDate"):
        if key in updates:
            parsed = parse_date(updates[key])
            if parsed is None:
                raise ValidationError("Invalid pickup or return date")
            updates[key] = parsed

    if "pickupDate" in updates and "returnDate" in updates and updates["pickupDate"] >= updates["returnDate"]:
        raise ValidationError("Pickup date must be before return date")

    if "specialRequests" in updates:
        updates["specialRequests"] = _special_requests(updates["specialRequests"])

    existing = await db_operations.get_booking(oid)

    if new_status is not None:
        current = existing.get("status", "pending")
        if new_status != current and new_status not in BOOKING_TRANSITIONS.get(current, set()):
            raise ValidationError(f"Cannot change booking status from {current} to {new_status}")

    booking = await db_operations.update_booking(oid, updates)
    return _ok(serialize_doc(booking))


async def delete_booking_route(booking_id: str):
    await db_operations.delete_booking(parse_object_id(booking_id, "booking"))
    return _ok({"message": "Booking deleted successfully"})


# Read-only views

async def list_customers_route():
    bookings = await db_operations.list_bookings()
    customers = build_customer_summaries(bookings)
    return _ok(customers, count=len(customers))


async def list_messages_route():
    return _ok_list(await db_operations.list_messages())


async def get_message_route(message_id: str):
    message = await db_operations.get_message(parse_object_id(message_id, "message"))
    return _ok(serialize_doc(message))


# Maintenance

async def reap_orphaned_images_route():
    """
    Delete recorded orphaned images from the image store.

    Records whose URL yields no public id are dropped; records whose delete
    fails are kept for the next run.
    """
    orphans = await db_operations.list_orphaned_images()
    reaped = failed = skipped = 0

    logger.info(f"Reaping {len(orphans)} orphaned image(s)...")
    for orphan in orphans:
        public_id = public_id_from_url(orphan.get("url"))
        if not public_id:
            await db_operations.remove_orphaned_image(orphan["_id"])
            skipped += 1
            continue

        try:
            removed = await destroy_image(public_id)
        except UpstreamError as e:
            logger.warning(f"⚠️  Could not delete orphaned image {public_id}: {e.message}")
            failed += 1
            continue

        if removed:
            await db_operations.remove_orphaned_image(orphan["_id"])
            reaped += 1
        else:
            failed += 1

    logger.info(f"Orphan reaping complete. Reaped: {reaped}, Failed: {failed}, Skipped: {skipped}")
    return _ok({"reaped": reaped, "failed": failed, "skipped": skipped})
