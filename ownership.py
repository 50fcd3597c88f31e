"""
Car-to-owner assignment rules.

A car belongs to at most one owner at a time. `validate_assignment` and
`check_owner_uniqueness` are read-only checks that produce readable errors
before anything is written. `claim_cars` / `release_cars` maintain the
`car_assignments` collection, whose `_id` is the car id, so the store itself
refuses a second concurrent claim on the same car.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from errors import ConflictError, ValidationError
from mongo_database import get_assignments_collection, get_cars_collection, get_owners_collection

logger = logging.getLogger(__name__)

# Owner conflicts (email, phone, cars) are reported as 400
OWNER_CONFLICT_STATUS = 400

OWNER_UNIQUE_MESSAGES = {
    "email": "An owner with this email already exists",
    "phone": "An owner with this phone number already exists",
}


def parse_car_ids(car_ids) -> List[ObjectId]:
    """
    Turn the submitted car id strings into ObjectIds.
    Duplicates are collapsed, first-seen order is kept.
    """
    if not car_ids or not isinstance(car_ids, (list, tuple)):
        raise ValidationError("At least one car must be assigned to the owner")

    parsed: List[ObjectId] = []
    for car_id in car_ids:
        if isinstance(car_id, ObjectId):
            oid = car_id
        elif isinstance(car_id, str) and ObjectId.is_valid(car_id):
            oid = ObjectId(car_id)
        else:
            raise ValidationError("Invalid car ID format")
        if oid not in parsed:
            parsed.append(oid)
    return parsed


def _excluding(owner_id: Optional[ObjectId]) -> dict:
    return {} if owner_id is None else {"_id": {"$ne": owner_id}}


async def validate_assignment(owner_id: Optional[ObjectId], car_ids) -> None:
    """
    Check that `car_ids` may be held by the owner `owner_id` (None on create).

    Fails with ValidationError when the list is empty, malformed or names a
    car that does not exist, and with ConflictError naming the first car that
    another owner already holds. The owner being updated is excluded from the
    scan so it can keep its own cars.
    """
    proposed = parse_car_ids(car_ids)

    cars = await get_cars_collection()
    existing = await cars.count_documents({"_id": {"$in": proposed}})
    if existing != len(proposed):
        raise ValidationError("One or more cars do not exist")

    owners = await get_owners_collection()
    others = await owners.find(_excluding(owner_id), {"cars": 1}).to_list(length=None)

    taken = set()
    for other in others:
        taken.update(other.get("cars") or [])

    for car_id in proposed:
        if car_id in taken:
            logger.warning(f"[ASSIGN] Car {car_id} already held by another owner")
            raise ConflictError(
                "cars",
                str(car_id),
                f"Car {car_id} is already assigned to another owner",
                status_code=OWNER_CONFLICT_STATUS,
            )


async def check_owner_uniqueness(owner_id: Optional[ObjectId], email: str, phone: str) -> None:
    """Reject an email or phone already used by an owner other than `owner_id`."""
    owners = await get_owners_collection()

    if await owners.find_one({"email": email, **_excluding(owner_id)}):
        raise ConflictError("email", email, OWNER_UNIQUE_MESSAGES["email"],
                            status_code=OWNER_CONFLICT_STATUS)

    if await owners.find_one({"phone": phone, **_excluding(owner_id)}):
        raise ConflictError("phone", phone, OWNER_UNIQUE_MESSAGES["phone"],
                            status_code=OWNER_CONFLICT_STATUS)


async def claim_cars(owner_id: ObjectId, car_ids: Iterable[ObjectId]) -> None:
    """
    Record `owner_id` as the holder of each car.

    A car already claimed by the same owner is accepted. If another owner holds
    one of the cars, every claim made by this call is undone and ConflictError
    is raised. Claims on cars that were deleted meanwhile are undone as well,
    with ValidationError.
    """
    assignments = await get_assignments_collection()
    claimed: List[ObjectId] = []

    for car_id in car_ids:
        try:
            await assignments.insert_one({"_id": car_id, "ownerId": owner_id})
            claimed.append(car_id)
        except DuplicateKeyError:
            holder = await assignments.find_one({"_id": car_id})
            if holder is not None and holder.get("ownerId") == owner_id:
                continue
            if claimed:
                await assignments.delete_many({"_id": {"$in": claimed}, "ownerId": owner_id})
            logger.warning(f"[ASSIGN] Claim on car {car_id} lost to another owner")
            raise ConflictError(
                "cars",
                str(car_id),
                f"Car {car_id} is already assigned to another owner",
                status_code=OWNER_CONFLICT_STATUS,
            )

    if not claimed:
        return

    # A car deleted between validation and the claim must not stay claimed
    cars = await get_cars_collection()
    if await cars.count_documents({"_id": {"$in": claimed}}) != len(claimed):
        await assignments.delete_many({"_id": {"$in": claimed}, "ownerId": owner_id})
        logger.warning(f"[ASSIGN] Owner {owner_id} claimed a car that no longer exists")
        raise ValidationError("One or more cars do not exist")

    logger.info(f"[ASSIGN] Owner {owner_id} claimed {len(claimed)} car(s)")


async def release_cars(owner_id: ObjectId, car_ids: Optional[Iterable[ObjectId]] = None) -> int:
    """
    Drop the owner's claims on `car_ids`, or on all of its cars when omitted.
    Returns the number of released cars.
    """
    assignments = await get_assignments_collection()
    query = {"ownerId": owner_id}
    if car_ids is not None:
        car_ids = list(car_ids)
        if not car_ids:
            return 0
        query["_id"] = {"$in": car_ids}

    result = await assignments.delete_many(query)
    if result.deleted_count:
        logger.info(f"[ASSIGN] Owner {owner_id} released {result.deleted_count} car(s)")
    return result.deleted_count


async def car_holder(car_id: ObjectId) -> Optional[ObjectId]:
    """Return the id of the owner holding `car_id`, if any."""
    assignments = await get_assignments_collection()
    assignment = await assignments.find_one({"_id": car_id})
    return assignment.get("ownerId") if assignment else None


async def reserve_for_delete(car_id: ObjectId) -> None:
    """
    Hold the car's assignment slot while the car is being deleted.

    The reservation is an assignment without an owner, so it fails when an
    owner holds the car and makes concurrent claims fail until it is released.
    """
    assignments = await get_assignments_collection()
    try:
        await assignments.insert_one({"_id": car_id, "ownerId": None})
    except DuplicateKeyError:
        raise ConflictError(
            "cars",
            str(car_id),
            "Car is assigned to an owner; remove it from the owner first",
        )


async def release_delete_reservation(car_id: ObjectId) -> None:
    assignments = await get_assignments_collection()
    await assignments.delete_one({"_id": car_id, "ownerId": None})
