"""
Booking transactions.

A booking's existence is coupled to its slot's `is_booked` flag. Every operation
that changes either side runs under the lock for that slot, so for any slot the
accepted transitions (free -> booked -> free -> ...) form a single linear history.

Within the lock the slot flip goes through `Store.compare_and_set`, and each
two-step change has a compensating step if the second write fails:

    create:  flip slot False->True, insert booking   (undo: flip back)
    cancel:  set booking cancelled, flip slot True->False   (undo: restore status)
    delete:  flip slot True->False, delete booking   (undo: flip back)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database import Store
from errors import ConflictError, NotFoundError, ValidationError
from locks import KeyedLock, resource_locks, slot_key
from policy import Caller, authorize
from schemas import BookingStatus, Role

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = ("status", "notes")

TRANSITIONS = {
    BookingStatus.PENDING.value: {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CONFIRMED.value: {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CANCELLED.value: set(),
    BookingStatus.COMPLETED.value: set(),
}

INITIAL_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def holds_slot(booking: Dict[str, Any]) -> bool:
    return booking["status"] != BookingStatus.CANCELLED


class BookingService:
    def __init__(self, store: Store, locks: Optional[KeyedLock] = None) -> None:
        self.store = store
        self.locks = locks or resource_locks

    def _get_booking(self, booking_id: int) -> Dict[str, Any]:
        booking = self.store.get_document("booking", booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", code="booking_not_found")
        return booking

    def _release_slot(self, slot_id: int) -> None:
        if not self.store.compare_and_set("slot", slot_id, "is_booked", True, False):
            # Slot already free or gone; nothing to release.
            logger.warning("slot_release_noop", extra={"slot_id": slot_id})

    def _reclaim_slot(self, booking: Dict[str, Any]) -> None:
        logger.error(
            "booking_delete_failed_reclaiming_slot",
            extra={"booking_id": booking["id"], "slot_id": booking["slot_id"]},
        )
        self.store.compare_and_set("slot", booking["slot_id"], "is_booked", False, True)

    def create_booking(
        self,
        caller: Caller,
        slot_id: int,
        turf_id: int,
        team_name: Optional[str] = None,
        player_count: int = 1,
        notes: Optional[str] = None,
        status: str = BookingStatus.CONFIRMED,
    ) -> Dict[str, Any]:
        authorize("create_booking", caller)
        if player_count < 1:
            raise ValidationError("player_count must be at least 1", code="invalid_player_count")
        if status not in INITIAL_STATUSES:
            raise ValidationError(
                "A new booking must be pending or confirmed", code="invalid_booking_status"
            )

        with self.locks.hold(slot_key(slot_id)):
            slot = self.store.get_document("slot", slot_id)
            if slot is None:
                raise NotFoundError("Slot not found", code="slot_not_found")
            if slot["is_booked"]:
                logger.warning(
                    "booking_conflict", extra={"slot_id": slot_id, "customer_id": caller.id}
                )
                raise ConflictError("Slot is already booked", code="slot_already_booked")

            turf = self.store.get_document("turf", turf_id)
            if turf is None:
                raise NotFoundError("Turf not found", code="turf_not_found")
            if slot["owner_id"] != turf["owner_id"] or slot["turf_id"] != turf["id"]:
                raise ValidationError("Slot and turf mismatch", code="slot_turf_mismatch")
            if player_count > turf["max_players"]:
                raise ValidationError(
                    f"This turf allows at most {turf['max_players']} players",
                    code="too_many_players",
                )

            if not self.store.compare_and_set("slot", slot_id, "is_booked", False, True):
                # Another process sharing the database won the slot.
                raise ConflictError("Slot is already booked", code="slot_already_booked")
            try:
                booking = self.store.create_document(
                    "booking",
                    {
                        "customer_id": caller.id,
                        "owner_id": slot["owner_id"],
                        "turf_id": slot["turf_id"],
                        "slot_id": slot_id,
                        "status": BookingStatus(status).value,
                        "team_name": team_name,
                        "player_count": player_count,
                        "notes": notes,
                        "created_at": datetime.now(timezone.utc).replace(tzinfo=None),
                    },
                )
            except Exception:
                logger.error("booking_insert_failed_releasing_slot", extra={"slot_id": slot_id})
                self.store.compare_and_set("slot", slot_id, "is_booked", True, False)
                raise

        logger.info(
            "booking_created",
            extra={"booking_id": booking["id"], "slot_id": slot_id, "customer_id": caller.id},
        )
        return booking

    def get_booking(self, caller: Caller, booking_id: int) -> Dict[str, Any]:
        booking = self._get_booking(booking_id)
        authorize("view_booking", caller, booking)
        return booking

    def list_bookings(self, caller: Caller) -> List[Dict[str, Any]]:
        if caller.role == Role.OWNER:
            return self.store.get_documents("booking", {"owner_id": caller.id})
        return self.store.get_documents("booking", {"customer_id": caller.id})

    def enrich(self, bookings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach turf name and slot times for display."""
        out = []
        for booking in bookings:
            turf = self.store.get_document("turf", booking["turf_id"]) or {}
            slot = self.store.get_document("slot", booking["slot_id"]) or {}
            out.append(
                dict(
                    booking,
                    turf_name=turf.get("name"),
                    start_time=slot.get("start_time"),
                    end_time=slot.get("end_time"),
                )
            )
        return out

    def update_booking(
        self, caller: Caller, booking_id: int, patch: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Apply a status/notes patch. Any other key in `patch` is ignored."""
        booking = self._get_booking(booking_id)
        authorize("mutate_booking", caller, booking)
        changes = {k: v for k, v in patch.items() if k in MUTABLE_FIELDS and v is not None}
        if "status" in changes:
            try:
                changes["status"] = BookingStatus(changes["status"]).value
            except ValueError:
                raise ValidationError(
                    f"Unknown booking status: {changes['status']}", code="invalid_booking_status"
                )
        if not changes:
            return booking

        with self.locks.hold(slot_key(booking["slot_id"])):
            booking = self._get_booking(booking_id)
            current = booking["status"]
            new_status = changes.get("status", current)
            if new_status == current:
                changes.pop("status", None)
            else:
                authorize("set_booking_status", caller, new_status)
                if new_status not in TRANSITIONS[current]:
                    raise ValidationError(
                        f"Cannot change booking from {current} to {new_status}",
                        code="invalid_status_transition",
                    )
            if not changes:
                return booking

            updated = self.store.update_document("booking", booking_id, changes)
            if updated is None:
                raise NotFoundError("Booking not found", code="booking_not_found")
            if changes.get("status") == BookingStatus.CANCELLED:
                try:
                    self._release_slot(booking["slot_id"])
                except Exception:
                    logger.error(
                        "slot_release_failed_restoring_booking",
                        extra={"booking_id": booking_id, "slot_id": booking["slot_id"]},
                    )
                    self.store.update_document("booking", booking_id, {"status": current})
                    raise
                logger.info(
                    "booking_cancelled",
                    extra={"booking_id": booking_id, "slot_id": booking["slot_id"]},
                )
        return updated

    def cancel_booking(self, caller: Caller, booking_id: int) -> Dict[str, Any]:
        return self.update_booking(caller, booking_id, {"status": BookingStatus.CANCELLED})

    def delete_booking(self, caller: Caller, booking_id: int) -> None:
        booking = self._get_booking(booking_id)
        authorize("mutate_booking", caller, booking)

        with self.locks.hold(slot_key(booking["slot_id"])):
            booking = self._get_booking(booking_id)
            releasing = holds_slot(booking)
            if releasing:
                self._release_slot(booking["slot_id"])
            try:
                deleted = self.store.delete_document("booking", booking_id)
            except Exception:
                if releasing:
                    self._reclaim_slot(booking)
                raise
            if not deleted:
                if releasing:
                    self._reclaim_slot(booking)
                raise NotFoundError("Booking not found", code="booking_not_found")
        logger.info(
            "booking_deleted", extra={"booking_id": booking_id, "slot_id": booking["slot_id"]}
        )
