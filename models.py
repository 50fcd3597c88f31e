"""
Request payload models and status vocabularies.

Fields are optional at the schema level so that missing values reach the
route handlers, which report them with the messages the admin UI shows.
"""
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

OWNER_STATUSES = ("active", "inactive", "suspended")

BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled")

# Allowed status changes; completed and cancelled are terminal.
BOOKING_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

BOOKING_UPDATABLE_FIELDS = ("status", "specialRequests", "pickupDate", "returnDate")

SPECIAL_REQUESTS_MAX_LENGTH = 500

# Car fields copied into an owner's populated `cars` list
OWNER_CAR_SUMMARY_FIELDS = ("model", "regestrationNumber", "type", "year", "image", "location", "pricePerDay")


class OwnerPayload(BaseModel):
    """Body of POST /carowners and PUT /carowners/{id}."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    joinedDate: Optional[str] = None
    status: Optional[str] = None
    cars: Optional[List[str]] = Field(None, description="Ids of the cars this owner holds")


class CustomerInfo(BaseModel):
    fullName: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    idNumber: Optional[str] = None


class BookingCreate(BaseModel):
    """Body of POST /booking."""

    carId: Optional[str] = None
    registrationNumber: Optional[str] = None
    model: Optional[str] = None
    pickupDate: Optional[str] = None
    returnDate: Optional[str] = None
    totalAmount: Optional[float] = None
    customerInfo: Optional[CustomerInfo] = None
    specialRequests: Optional[str] = None
