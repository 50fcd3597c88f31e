from contextlib import asynccontextmanager
import logging

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import CORS_ORIGINS, LOG_DATE_FORMAT, LOG_FORMAT, LOG_LEVEL, PORT
from errors import AppError
from models import BookingCreate, OwnerPayload
from mongo_database import close_client, ensure_indexes
import routes

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format=LOG_FORMAT,
    datefmt=LOG_DATE_FORMAT
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await ensure_indexes()
    except Exception as e:
        # Don't raise - the app still starts; requests surface the database error
        logger.warning(f"⚠️  Failed to ensure MongoDB indexes: {str(e)}")
        logger.warning("Please check your MONGODB_URI in .env file")
    yield
    await close_client()


app = FastAPI(
    title="Fleet Admin API",
    description="Administrative backend for cars, categories, owners and bookings",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return _error(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    message = f"Validation error: {'; '.join(problems)}"
    logger.warning(f"{request.method} {request.url.path} rejected (400): {message}")
    return _error(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error in {request.method} {request.url.path}: {type(exc).__name__}: {str(exc)}")
    return _error(500, "Internal server error")


@app.get("/")
async def root():
    return {"message": "Fleet Admin API"}


# Cars
@app.get("/cars")
async def list_cars():
    return await routes.list_cars_route()


@app.post("/cars")
async def create_car(request: Request):
    """Multipart: model, type, regestrationNumber, location, pricePerDay, year,
    transmission, fuel, seats, repeated features, schedule/scheduleJson, image."""
    form = await request.form()
    return await routes.create_car_route(form)


@app.get("/cars/{car_id}")
async def get_car(car_id: str):
    return await routes.get_car_route(car_id)


@app.put("/cars/{car_id}")
async def update_car(car_id: str, request: Request):
    form = await request.form()
    return await routes.update_car_route(car_id, form)


@app.delete("/cars/{car_id}")
async def delete_car(car_id: str):
    return await routes.delete_car_route(car_id)


# Categories
@app.get("/category")
async def list_categories():
    return await routes.list_categories_route()


@app.post("/category")
async def create_category(request: Request):
    """Multipart: title, description, priceFrom, repeated features, popular, image."""
    form = await request.form()
    return await routes.create_category_route(form)


@app.get("/category/{category_id}")
async def get_category(category_id: str):
    return await routes.get_category_route(category_id)


@app.put("/category/{category_id}")
async def update_category(category_id: str, request: Request):
    form = await request.form()
    return await routes.update_category_route(category_id, form)


@app.delete("/category/{category_id}")
async def delete_category(category_id: str):
    return await routes.delete_category_route(category_id)


# Car owners
@app.get("/carowners")
async def list_owners():
    return await routes.list_owners_route()


@app.post("/carowners")
async def create_owner(payload: OwnerPayload):
    return await routes.create_owner_route(payload)


@app.get("/carowners/{owner_id}")
async def get_owner(owner_id: str):
    return await routes.get_owner_route(owner_id)


@app.put("/carowners/{owner_id}")
async def update_owner(owner_id: str, payload: OwnerPayload):
    return await routes.update_owner_route(owner_id, payload)


@app.delete("/carowners/{owner_id}")
async def delete_owner(owner_id: str):
    return await routes.delete_owner_route(owner_id)


# Bookings
@app.get("/booking")
async def list_bookings():
    return await routes.list_bookings_route()


@app.post("/booking")
async def create_booking(payload: BookingCreate):
    return await routes.create_booking_route(payload)


@app.get("/booking/{booking_id}")
async def get_booking(booking_id: str):
    return await routes.get_booking_route(booking_id)


@app.patch("/booking/{booking_id}")
async def update_booking(booking_id: str, payload: dict = Body(...)):
    """Writable fields: status, specialRequests, pickupDate, returnDate."""
    return await routes.update_booking_route(booking_id, payload)


@app.delete("/booking/{booking_id}")
async def delete_booking(booking_id: str):
    return await routes.delete_booking_route(booking_id)


# Read-only views
@app.get("/customers")
async def list_customers():
    return await routes.list_customers_route()


@app.get("/messages")
async def list_messages():
    return await routes.list_messages_route()


@app.get("/messages/{message_id}")
async def get_message(message_id: str):
    return await routes.get_message_route(message_id)


# Maintenance
@app.post("/maintenance/reap-images")
async def reap_orphaned_images():
    return await routes.reap_orphaned_images_route()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
