from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from bookings import BookingService
from database import MemoryStore
from locks import KeyedLock
from policy import Caller
from schemas import Role
from slots import SlotService


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def locks():
    return KeyedLock(timeout=5)


@pytest.fixture
def slot_service(store, locks):
    return SlotService(store, locks)


@pytest.fixture
def booking_service(store, locks):
    return BookingService(store, locks)


def _user(store, username, role, **extra):
    return store.create_document(
        "user",
        dict(
            username=username,
            password_hash="x",
            email=f"{username}@example.com",
            full_name=username.title(),
            role=role.value,
            **extra,
        ),
    )


@pytest.fixture
def owner(store):
    return Caller.from_user(_user(store, "owner", Role.OWNER, business_name="Green Field Arena"))


@pytest.fixture
def other_owner(store):
    return Caller.from_user(_user(store, "rival", Role.OWNER))


@pytest.fixture
def customer(store):
    return Caller.from_user(_user(store, "alice", Role.CUSTOMER))


@pytest.fixture
def other_customer(store):
    return Caller.from_user(_user(store, "bob", Role.CUSTOMER))


def _make_turf(store, owner_id, **overrides):
    data = dict(
        owner_id=owner_id,
        name="Central Cricket Ground",
        description=None,
        sport_type="cricket",
        max_players=22,
        duration=60,
        price=150000,
        amenities=["floodlights", "parking"],
        location="Chennai",
    )
    data.update(overrides)
    return store.create_document("turf", data)


@pytest.fixture
def turf(store, owner):
    return _make_turf(store, owner.id)


@pytest.fixture
def slot(slot_service, owner, turf):
    return slot_service.create_slot(
        owner, turf["id"], datetime(2025, 1, 1, 9, 0), datetime(2025, 1, 1, 9, 30)
    )


@pytest.fixture
def client(store):
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_turf(store):
    return lambda owner_id, **overrides: _make_turf(store, owner_id, **overrides)
