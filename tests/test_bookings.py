from datetime import datetime

import pytest

from bookings import BookingService
from database import MemoryStore
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from policy import Caller
from schemas import Role


def test_booking_marks_slot_booked(store, booking_service, customer, turf, slot):
    booking = booking_service.create_booking(
        customer, slot["id"], turf["id"], team_name="Chennai Stars", player_count=16
    )

    assert booking["status"] == "confirmed"
    assert booking["customer_id"] == customer.id
    assert booking["slot_id"] == slot["id"]
    assert store.get_document("slot", slot["id"])["is_booked"] is True


def test_second_booking_on_same_slot_conflicts(
    store, booking_service, customer, other_customer, turf, slot
):
    booking_service.create_booking(customer, slot["id"], turf["id"])

    with pytest.raises(ConflictError) as exc:
        booking_service.create_booking(other_customer, slot["id"], turf["id"])

    assert exc.value.code == "slot_already_booked"
    assert store.count_documents("booking") == 1
    assert store.get_document("slot", slot["id"])["is_booked"] is True


def test_owner_id_comes_from_slot(booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])
    assert booking["owner_id"] == slot["owner_id"] == owner.id
    assert booking["turf_id"] == slot["turf_id"]


def test_missing_slot(booking_service, customer, turf):
    with pytest.raises(NotFoundError):
        booking_service.create_booking(customer, 404, turf["id"])


def test_missing_turf(store, booking_service, customer, slot):
    with pytest.raises(NotFoundError):
        booking_service.create_booking(customer, slot["id"], 404)
    assert store.get_document("slot", slot["id"])["is_booked"] is False


def test_slot_turf_mismatch(store, make_turf, booking_service, owner, customer, slot):
    other_turf = make_turf(owner.id, name="Court B", sport_type="badminton", max_players=4)

    with pytest.raises(ValidationError):
        booking_service.create_booking(customer, slot["id"], other_turf["id"])
    assert store.get_document("slot", slot["id"])["is_booked"] is False


def test_player_count_limited_by_turf(booking_service, customer, turf, slot):
    with pytest.raises(ValidationError):
        booking_service.create_booking(customer, slot["id"], turf["id"], player_count=23)


def test_only_customers_book(booking_service, owner, turf, slot):
    with pytest.raises(AuthorizationError):
        booking_service.create_booking(owner, slot["id"], turf["id"])


def test_new_booking_cannot_start_completed(booking_service, customer, turf, slot):
    with pytest.raises(ValidationError):
        booking_service.create_booking(customer, slot["id"], turf["id"], status="completed")


def test_cancel_frees_slot_for_next_customer(
    store, booking_service, customer, other_customer, turf, slot
):
    first = booking_service.create_booking(customer, slot["id"], turf["id"])

    cancelled = booking_service.cancel_booking(customer, first["id"])

    assert cancelled["status"] == "cancelled"
    assert store.get_document("slot", slot["id"])["is_booked"] is False

    second = booking_service.create_booking(other_customer, slot["id"], turf["id"])
    assert second["customer_id"] == other_customer.id
    assert store.get_document("slot", slot["id"])["is_booked"] is True


def test_delete_frees_slot(store, booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])

    booking_service.delete_booking(owner, booking["id"])

    assert store.get_document("booking", booking["id"]) is None
    assert store.get_document("slot", slot["id"])["is_booked"] is False


def test_deleting_cancelled_booking_leaves_rebooked_slot_alone(
    store, booking_service, customer, other_customer, turf, slot
):
    old = booking_service.create_booking(customer, slot["id"], turf["id"])
    booking_service.cancel_booking(customer, old["id"])
    booking_service.create_booking(other_customer, slot["id"], turf["id"])

    booking_service.delete_booking(customer, old["id"])

    assert store.get_document("slot", slot["id"])["is_booked"] is True


def test_completion_keeps_slot_booked(store, booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])

    updated = booking_service.update_booking(owner, booking["id"], {"status": "completed"})

    assert updated["status"] == "completed"
    assert store.get_document("slot", slot["id"])["is_booked"] is True


def test_deleting_completed_booking_frees_slot(store, booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])
    booking_service.update_booking(owner, booking["id"], {"status": "completed"})

    booking_service.delete_booking(owner, booking["id"])

    assert store.get_document("booking", booking["id"]) is None
    assert store.get_document("slot", slot["id"])["is_booked"] is False


def test_update_ignores_fields_outside_allow_list(booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"], player_count=4)

    updated = booking_service.update_booking(
        owner,
        booking["id"],
        {"notes": "bring your own balls", "slot_id": 99, "owner_id": 7, "player_count": 1},
    )

    assert updated["notes"] == "bring your own balls"
    assert updated["slot_id"] == slot["id"]
    assert updated["owner_id"] == owner.id
    assert updated["player_count"] == 4


def test_customer_cannot_complete_booking(booking_service, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])
    with pytest.raises(AuthorizationError):
        booking_service.update_booking(customer, booking["id"], {"status": "completed"})


def test_terminal_statuses_do_not_reopen(booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])
    booking_service.cancel_booking(customer, booking["id"])

    with pytest.raises(ValidationError):
        booking_service.update_booking(owner, booking["id"], {"status": "confirmed"})


def test_pending_booking_can_be_confirmed(store, booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"], status="pending")
    assert store.get_document("slot", slot["id"])["is_booked"] is True

    updated = booking_service.update_booking(owner, booking["id"], {"status": "confirmed"})
    assert updated["status"] == "confirmed"


def test_unknown_status_is_rejected(booking_service, owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])
    with pytest.raises(ValidationError):
        booking_service.update_booking(owner, booking["id"], {"status": "paused"})


def test_strangers_cannot_touch_booking(
    booking_service, other_owner, other_customer, customer, turf, slot
):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])

    for stranger in (other_owner, other_customer):
        with pytest.raises(AuthorizationError):
            booking_service.update_booking(stranger, booking["id"], {"notes": "hi"})
        with pytest.raises(AuthorizationError):
            booking_service.delete_booking(stranger, booking["id"])
        with pytest.raises(AuthorizationError):
            booking_service.get_booking(stranger, booking["id"])


def test_list_bookings_by_role(booking_service, owner, other_owner, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])

    assert [b["id"] for b in booking_service.list_bookings(owner)] == [booking["id"]]
    assert [b["id"] for b in booking_service.list_bookings(customer)] == [booking["id"]]
    assert booking_service.list_bookings(other_owner) == []


def test_enrich_joins_turf_and_slot(booking_service, customer, turf, slot):
    booking = booking_service.create_booking(customer, slot["id"], turf["id"])
    [view] = booking_service.enrich([booking])
    assert view["turf_name"] == turf["name"]
    assert view["start_time"] == datetime(2025, 1, 1, 9, 0)


class FailingBookingInsertStore(MemoryStore):
    def create_document(self, collection, data):
        if collection == "booking":
            raise RuntimeError("write timeout")
        return super().create_document(collection, data)


def test_failed_insert_releases_slot(locks, owner):
    store = FailingBookingInsertStore()
    turf = store.create_document(
        "turf",
        {"owner_id": owner.id, "name": "Shuttle Hub", "sport_type": "badminton",
         "max_players": 4, "duration": 60, "price": 50000},
    )
    slot = store.create_document(
        "slot",
        {"owner_id": owner.id, "turf_id": turf["id"], "is_booked": False,
         "start_time": datetime(2025, 1, 1, 9), "end_time": datetime(2025, 1, 1, 10)},
    )
    service = BookingService(store, locks)

    with pytest.raises(RuntimeError):
        service.create_booking(Caller(id=50, role=Role.CUSTOMER), slot["id"], turf["id"])

    assert store.get_document("slot", slot["id"])["is_booked"] is False
    assert store.get_documents("booking") == []


class LostSlotRaceStore(MemoryStore):
    """Simulates another process flipping the slot between our read and our write."""

    def compare_and_set(self, collection, doc_id, field, expected, value):
        if collection == "slot" and value is True:
            return False
        return super().compare_and_set(collection, doc_id, field, expected, value)


def test_lost_compare_and_set_is_a_conflict(locks, owner):
    store = LostSlotRaceStore()
    turf = store.create_document(
        "turf",
        {"owner_id": owner.id, "name": "Box Cricket", "sport_type": "cricket",
         "max_players": 12, "duration": 60, "price": 80000},
    )
    slot = store.create_document(
        "slot",
        {"owner_id": owner.id, "turf_id": turf["id"], "is_booked": False,
         "start_time": datetime(2025, 1, 1, 9), "end_time": datetime(2025, 1, 1, 10)},
    )
    service = BookingService(store, locks)

    with pytest.raises(ConflictError):
        service.create_booking(Caller(id=50, role=Role.CUSTOMER), slot["id"], turf["id"])
    assert store.get_documents("booking") == []
