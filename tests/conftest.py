import os
import uuid

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")

import mongomock
import pytest
from fastapi.testclient import TestClient

import mongo_database
import routes
from main import app


class AsyncCursor:
    """Async face of a mongomock cursor (sort / to_list, as used by the app)."""

    def __init__(self, cursor):
        self._cursor = cursor

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    """Wraps a mongomock collection so its methods can be awaited like motor's."""

    def __init__(self, collection):
        self._collection = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self._collection.find(*args, **kwargs))

    def __getattr__(self, name):
        method = getattr(self._collection, name)

        async def call(*args, **kwargs):
            return method(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, database):
        self._database = database

    def __getitem__(self, name):
        return AsyncCollection(self._database[name])


class AsyncMongoMockClient:
    def __init__(self):
        self._client = mongomock.MongoClient()

    def __getitem__(self, name):
        return AsyncDatabase(self._client[name])

    def close(self):
        self._client.close()


class FakeImageStore:
    """Stands in for api_client.upload_image / destroy_image in handler tests."""

    def __init__(self):
        self.uploads = []
        self.destroyed = []
        self.upload_error = None
        self.destroy_error = None

    async def upload(self, data, filename, folder, **kwargs):
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append({"data": data, "filename": filename, "folder": folder})
        n = len(self.uploads)
        return {
            "url": f"https://res.cloudinary.com/demo/image/upload/v170000000{n}/{folder}/image{n}.jpg",
            "public_id": f"{folder}/image{n}",
        }

    async def destroy(self, public_id, **kwargs):
        if self.destroy_error is not None:
            raise self.destroy_error
        self.destroyed.append(public_id)
        return True


@pytest.fixture
def mongo(monkeypatch):
    fake_client = AsyncMongoMockClient()
    monkeypatch.setattr(mongo_database, "_client", fake_client)
    monkeypatch.setattr(mongo_database, "MONGODB_DB", f"fleet_admin_test_{uuid.uuid4().hex}")
    return fake_client


@pytest.fixture
def image_store(monkeypatch):
    store = FakeImageStore()
    monkeypatch.setattr(routes, "upload_image", store.upload)
    monkeypatch.setattr(routes, "destroy_image", store.destroy)
    return store


@pytest.fixture
def client(mongo, image_store):
    with TestClient(app) as test_client:
        yield test_client


def car_form_fields(**overrides):
    fields = {
        "model": "Toyota Corolla",
        "type": "Sedan",
        "regestrationNumber": "KDF 789C",
        "location": "CBD, Nairobi",
        "pricePerDay": "4500",
        "year": "2023",
        "transmission": "Automatic",
        "fuel": "Petrol",
        "seats": "5",
    }
    fields.update(overrides)
    return fields


IMAGE = {"image": ("car.jpg", b"\xff\xd8\xff\xe0fake-jpeg", "image/jpeg")}


@pytest.fixture
def car_form():
    return car_form_fields


@pytest.fixture
def create_car(client):
    """POST a car and return its id."""

    def _create(registration, **overrides):
        response = client.post(
            "/cars",
            data=car_form_fields(regestrationNumber=registration, **overrides),
            files=IMAGE,
        )
        assert response.status_code == 201, response.json()
        return response.json()["data"]["_id"]

    return _create


@pytest.fixture
def owner_payload():
    def _payload(cars, **overrides):
        payload = {
            "name": "Jane Wanjiru",
            "email": "jane@example.com",
            "phone": "+254700000001",
            "location": "Nairobi",
            "joinedDate": "2024-05-01",
            "status": "active",
            "cars": cars,
        }
        payload.update(overrides)
        return payload

    return _payload
