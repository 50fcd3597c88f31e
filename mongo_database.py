"""
MongoDB connection and collection helpers.
"""
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING

from config import (
    MONGODB_URI,
    MONGODB_DB,
    CARS_COLLECTION,
    CATEGORIES_COLLECTION,
    OWNERS_COLLECTION,
    ASSIGNMENTS_COLLECTION,
    BOOKINGS_COLLECTION,
    MESSAGES_COLLECTION,
    ORPHANED_IMAGES_COLLECTION,
)

logger = logging.getLogger(__name__)

if not MONGODB_URI:
    raise ValueError("MONGODB_URI environment variable is required for MongoDB connection")

_client: Optional[AsyncIOMotorClient] = None


async def get_client() -> AsyncIOMotorClient:
    """
    Get a singleton MongoDB client instance.
    """
    global _client
    if _client is None:
        logger.info("Connecting to MongoDB...")
        _client = AsyncIOMotorClient(MONGODB_URI)
        logger.info("MongoDB client created")
    return _client


async def get_collection(name: str) -> AsyncIOMotorCollection:
    client = await get_client()
    db = client[MONGODB_DB]
    return db[name]


async def get_cars_collection() -> AsyncIOMotorCollection:
    return await get_collection(CARS_COLLECTION)


async def get_categories_collection() -> AsyncIOMotorCollection:
    return await get_collection(CATEGORIES_COLLECTION)


async def get_owners_collection() -> AsyncIOMotorCollection:
    return await get_collection(OWNERS_COLLECTION)


async def get_assignments_collection() -> AsyncIOMotorCollection:
    """
    Get the collection holding one document per assigned car.

    Documents are shaped `{_id: car_id, ownerId: owner_id}`; keying on the car
    id lets the store reject a second owner claiming the same car.
    """
    return await get_collection(ASSIGNMENTS_COLLECTION)


async def get_bookings_collection() -> AsyncIOMotorCollection:
    return await get_collection(BOOKINGS_COLLECTION)


async def get_messages_collection() -> AsyncIOMotorCollection:
    return await get_collection(MESSAGES_COLLECTION)


async def get_orphaned_images_collection() -> AsyncIOMotorCollection:
    return await get_collection(ORPHANED_IMAGES_COLLECTION)


async def ensure_indexes():
    """
    Create the unique indexes the application relies on.
    Safe to run on every startup - existing indexes are left as they are.
    """
    cars = await get_cars_collection()
    await cars.create_index([("regestrationNumber", ASCENDING)], unique=True)

    owners = await get_owners_collection()
    await owners.create_index([("email", ASCENDING)], unique=True)
    await owners.create_index([("phone", ASCENDING)], unique=True)

    assignments = await get_assignments_collection()
    await assignments.create_index([("ownerId", ASCENDING)])

    bookings = await get_bookings_collection()
    await bookings.create_index([("bookingId", ASCENDING)], unique=True)

    logger.info("✅ MongoDB indexes ensured")


async def close_client():
    """
    Close the MongoDB client.
    """
    global _client
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
        _client = None
