"""
Database operations for fleet, category, owner and booking records.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from data_processor import utc_now
from errors import ConflictError, NotFoundError
from models import OWNER_CAR_SUMMARY_FIELDS
from mongo_database import (
    get_bookings_collection,
    get_cars_collection,
    get_categories_collection,
    get_messages_collection,
    get_orphaned_images_collection,
    get_owners_collection,
)
from ownership import (
    OWNER_CONFLICT_STATUS,
    OWNER_UNIQUE_MESSAGES,
    claim_cars,
    release_cars,
    release_delete_reservation,
    reserve_for_delete,
)

logger = logging.getLogger(__name__)


def _duplicate_field(error: DuplicateKeyError) -> str:
    """Name of the field a duplicate-key error was raised for."""
    details = error.details or {}
    key_pattern = details.get("keyPattern") or details.get("keyValue") or {}
    if key_pattern:
        return next(iter(key_pattern))
    return "field"


async def _list(collection, query: Optional[dict] = None, sort_field: str = "createdAt") -> List[dict]:
    return await collection.find(query or {}).sort(sort_field, DESCENDING).to_list(length=None)


async def _get(collection, record_id: ObjectId, label: str) -> dict:
    doc = await collection.find_one({"_id": record_id})
    if not doc:
        raise NotFoundError(f"{label} not found")
    return doc


# Cars

async def list_cars() -> List[dict]:
    cars = await get_cars_collection()
    return await _list(cars)


async def get_car(car_id: ObjectId) -> dict:
    cars = await get_cars_collection()
    return await _get(cars, car_id, "Car")


async def find_car_by_registration(registration_number: str, exclude_id: Optional[ObjectId] = None) -> Optional[dict]:
    """Exact, case-sensitive lookup of a car by registration number."""
    cars = await get_cars_collection()
    query = {"regestrationNumber": registration_number}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    return await cars.find_one(query)


def _registration_conflict(registration_number: str) -> ConflictError:
    return ConflictError(
        "regestrationNumber",
        registration_number,
        "A car with this registration number already exists.",
    )


async def insert_car(fields: dict) -> dict:
    cars = await get_cars_collection()
    now = utc_now()
    doc = {**fields, "createdAt": now, "updatedAt": now}
    try:
        result = await cars.insert_one(doc)
    except DuplicateKeyError:
        raise _registration_conflict(fields.get("regestrationNumber"))

    logger.info(f"[INSERT] Car {result.inserted_id} | Registration: {fields.get('regestrationNumber')}")
    return await cars.find_one({"_id": result.inserted_id})


async def update_car(car_id: ObjectId, fields: dict) -> dict:
    cars = await get_cars_collection()
    try:
        result = await cars.update_one({"_id": car_id}, {"$set": {**fields, "updatedAt": utc_now()}})
    except DuplicateKeyError:
        raise _registration_conflict(fields.get("regestrationNumber"))
    if result.matched_count == 0:
        raise NotFoundError("Car not found")

    logger.info(f"[UPDATE] Car {car_id} | Registration: {fields.get('regestrationNumber')}")
    return await cars.find_one({"_id": car_id})


async def delete_car(car_id: ObjectId) -> dict:
    """
    Delete a car. A car held by an owner cannot be deleted.

    The car's assignment slot is reserved for the duration of the delete, so
    an owner cannot claim the car while it is being removed.
    """
    await reserve_for_delete(car_id)
    try:
        cars = await get_cars_collection()
        deleted = await cars.find_one_and_delete({"_id": car_id})
    finally:
        await release_delete_reservation(car_id)
    if not deleted:
        raise NotFoundError("Car not found")

    logger.info(f"[DELETE] Car {car_id}")
    return deleted


# Categories

async def list_categories() -> List[dict]:
    categories = await get_categories_collection()
    return await _list(categories)


async def get_category(category_id: ObjectId) -> dict:
    categories = await get_categories_collection()
    return await _get(categories, category_id, "Category")


async def insert_category(fields: dict) -> dict:
    categories = await get_categories_collection()
    now = utc_now()
    result = await categories.insert_one({**fields, "createdAt": now, "updatedAt": now})
    logger.info(f"[INSERT] Category {result.inserted_id} | Title: {fields.get('title')}")
    return await categories.find_one({"_id": result.inserted_id})


async def update_category(category_id: ObjectId, fields: dict) -> dict:
    categories = await get_categories_collection()
    result = await categories.update_one({"_id": category_id}, {"$set": {**fields, "updatedAt": utc_now()}})
    if result.matched_count == 0:
        raise NotFoundError("Category not found")
    logger.info(f"[UPDATE] Category {category_id} | Title: {fields.get('title')}")
    return await categories.find_one({"_id": category_id})


async def delete_category(category_id: ObjectId) -> dict:
    categories = await get_categories_collection()
    deleted = await categories.find_one_and_delete({"_id": category_id})
    if not deleted:
        raise NotFoundError("Category not found")
    logger.info(f"[DELETE] Category {category_id}")
    return deleted


# Owners

async def populate_owner_cars(owners: List[dict]) -> List[dict]:
    """
    Replace each owner's car id list with car summaries, keeping list order.
    Ids whose car no longer exists are dropped from the output.
    """
    car_ids = {car_id for owner in owners for car_id in owner.get("cars") or []}
    if not car_ids:
        return owners

    cars = await get_cars_collection()
    projection = {field: 1 for field in OWNER_CAR_SUMMARY_FIELDS}
    found = await cars.find({"_id": {"$in": list(car_ids)}}, projection).to_list(length=None)
    by_id = {car["_id"]: car for car in found}

    for owner in owners:
        owner["cars"] = [by_id[car_id] for car_id in owner.get("cars") or [] if car_id in by_id]
    return owners


async def list_owners() -> List[dict]:
    owners = await get_owners_collection()
    return await populate_owner_cars(await _list(owners))


async def get_owner(owner_id: ObjectId, populate: bool = True) -> dict:
    owners = await get_owners_collection()
    owner = await _get(owners, owner_id, "Car owner")
    if populate:
        await populate_owner_cars([owner])
    return owner


async def _owner_conflict(owners, owner_id: ObjectId, error: DuplicateKeyError, fields: dict) -> ConflictError:
    """Translate a duplicate-key error on the owners collection into the matching ConflictError."""
    field = _duplicate_field(error)
    if field not in OWNER_UNIQUE_MESSAGES:
        # No key pattern in the error details; look the colliding field up
        for candidate in OWNER_UNIQUE_MESSAGES:
            if await owners.find_one({candidate: fields.get(candidate), "_id": {"$ne": owner_id}}):
                field = candidate
                break
    message = OWNER_UNIQUE_MESSAGES.get(field, f"{field} already exists")
    return ConflictError(field, fields.get(field), message, status_code=OWNER_CONFLICT_STATUS)


async def create_owner(fields: dict, car_ids: List[ObjectId]) -> dict:
    """
    Insert a new owner holding `car_ids`.

    The cars are claimed before the owner document is written; if the insert
    fails the claims are released again.
    """
    owners = await get_owners_collection()
    owner_id = ObjectId()

    await claim_cars(owner_id, car_ids)

    now = utc_now()
    doc = {"_id": owner_id, **fields, "cars": list(car_ids), "createdAt": now, "updatedAt": now}
    try:
        await owners.insert_one(doc)
    except DuplicateKeyError as e:
        await release_cars(owner_id)
        raise await _owner_conflict(owners, owner_id, e, fields)
    except Exception:
        await release_cars(owner_id)
        raise

    logger.info(f"[INSERT] Car owner {owner_id} | Email: {fields.get('email')} | Cars: {len(car_ids)}")
    return await get_owner(owner_id)


async def update_owner(owner_id: ObjectId, fields: dict, car_ids: List[ObjectId]) -> dict:
    """
    Replace an owner's fields and car list.

    Newly added cars are claimed first; cars dropped from the list are
    released only after the owner document has been updated.
    """
    owners = await get_owners_collection()
    existing = await _get(owners, owner_id, "Car owner")

    current = list(existing.get("cars") or [])
    added = [car_id for car_id in car_ids if car_id not in current]
    dropped = [car_id for car_id in current if car_id not in car_ids]

    await claim_cars(owner_id, added)
    try:
        await owners.update_one(
            {"_id": owner_id},
            {"$set": {**fields, "cars": list(car_ids), "updatedAt": utc_now()}},
        )
    except DuplicateKeyError as e:
        await release_cars(owner_id, added)
        raise await _owner_conflict(owners, owner_id, e, fields)
    except Exception:
        await release_cars(owner_id, added)
        raise

    await release_cars(owner_id, dropped)

    logger.info(
        f"[UPDATE] Car owner {owner_id} | Cars: {len(car_ids)} "
        f"(+{len(added)} / -{len(dropped)})"
    )
    return await get_owner(owner_id)


async def delete_owner(owner_id: ObjectId) -> dict:
    """Delete an owner and free its cars for reassignment. Cars themselves are kept."""
    owners = await get_owners_collection()
    deleted = await owners.find_one_and_delete({"_id": owner_id})
    if not deleted:
        raise NotFoundError("Car owner not found")

    await release_cars(owner_id)
    logger.info(f"[DELETE] Car owner {owner_id}")
    return deleted


# Bookings

async def list_bookings() -> List[dict]:
    bookings = await get_bookings_collection()
    return await _list(bookings)


async def get_booking(booking_id: ObjectId) -> dict:
    bookings = await get_bookings_collection()
    return await _get(bookings, booking_id, "Booking")


async def insert_booking(fields: dict) -> dict:
    bookings = await get_bookings_collection()
    now = utc_now()
    result = await bookings.insert_one({**fields, "createdAt": now, "updatedAt": now})
    logger.info(
        f"[INSERT] Booking {fields.get('bookingId')} | Car: {fields.get('registrationNumber')} "
        f"| Status: {fields.get('status')}"
    )
    return await bookings.find_one({"_id": result.inserted_id})


async def update_booking(booking_id: ObjectId, updates: dict) -> dict:
    bookings = await get_bookings_collection()
    result = await bookings.update_one({"_id": booking_id}, {"$set": {**updates, "updatedAt": utc_now()}})
    if result.matched_count == 0:
        raise NotFoundError("Booking not found")
    logger.info(f"[UPDATE] Booking {booking_id} | Fields: {', '.join(sorted(updates))}")
    return await bookings.find_one({"_id": booking_id})


async def delete_booking(booking_id: ObjectId) -> dict:
    bookings = await get_bookings_collection()
    deleted = await bookings.find_one_and_delete({"_id": booking_id})
    if not deleted:
        raise NotFoundError("Booking not found")
    logger.info(f"[DELETE] Booking {deleted.get('bookingId')}")
    return deleted


# Messages (read-only)

async def list_messages() -> List[dict]:
    messages = await get_messages_collection()
    return await _list(messages, sort_field="date")


async def get_message(message_id: ObjectId) -> dict:
    messages = await get_messages_collection()
    return await _get(messages, message_id, "Message")


# Orphaned images

async def record_orphaned_image(url: Optional[str], reason: str) -> None:
    """Remember an uploaded image no record points at, for the reaper."""
    if not url:
        return
    orphans = await get_orphaned_images_collection()
    await orphans.insert_one({"url": url, "reason": reason, "createdAt": utc_now()})
    logger.info(f"Recorded orphaned image ({reason}): {url}")


async def list_orphaned_images() -> List[dict]:
    orphans = await get_orphaned_images_collection()
    return await orphans.find({}).to_list(length=None)


async def remove_orphaned_image(orphan_id: ObjectId) -> None:
    orphans = await get_orphaned_images_collection()
    await orphans.delete_one({"_id": orphan_id})
