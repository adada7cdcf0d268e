"""
Slot lifecycle: creating, re-timing, deleting and listing bookable intervals.

Slot creation and re-timing hold the turf lock so two owners' requests cannot
interleave between the overlap check and the insert. Deletion holds the slot
lock so it serializes with bookings on the same slot.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database import Store
from errors import ConflictError, NotFoundError, ValidationError
from locks import KeyedLock, resource_locks, slot_key, turf_key
from policy import Caller, authorize
from schemas import to_naive_utc

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]

MAX_REPEAT_DAYS = 366
SLOT_FIELDS = ("start_time", "end_time")


def overlaps(a: Interval, b: Interval) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def batch_intervals(
    start_date: date, start_time_of_day: time, duration_minutes: int, repeat_days: int
) -> List[Interval]:
    """One interval per day, same time of day, starting on `start_date`, in naive UTC."""
    length = timedelta(minutes=duration_minutes)
    intervals = []
    for i in range(repeat_days):
        start = to_naive_utc(datetime.combine(start_date + timedelta(days=i), start_time_of_day))
        intervals.append((start, start + length))
    return intervals


class SlotService:
    def __init__(self, store: Store, locks: Optional[KeyedLock] = None) -> None:
        self.store = store
        self.locks = locks or resource_locks

    def _get_turf(self, turf_id: int) -> Dict[str, Any]:
        turf = self.store.get_document("turf", turf_id)
        if turf is None:
            raise NotFoundError("Turf not found", code="turf_not_found")
        return turf

    def get_slot(self, slot_id: int) -> Dict[str, Any]:
        slot = self.store.get_document("slot", slot_id)
        if slot is None:
            raise NotFoundError("Slot not found", code="slot_not_found")
        return slot

    def _validate_interval(self, start_time: datetime, end_time: datetime) -> Interval:
        start_time, end_time = to_naive_utc(start_time), to_naive_utc(end_time)
        if end_time <= start_time:
            raise ValidationError(
                "end_time must be after start_time",
                code="invalid_slot_interval",
                details={"start_time": start_time, "end_time": end_time},
            )
        return start_time, end_time

    def _check_overlaps(
        self, turf_id: int, candidates: Iterable[Interval], exclude_id: Optional[int] = None
    ) -> None:
        existing = [
            (s["start_time"], s["end_time"], s["id"])
            for s in self.store.get_documents("slot", {"turf_id": turf_id})
            if s["id"] != exclude_id
        ]
        seen: List[Interval] = []
        for candidate in candidates:
            for start, end, slot_id in existing:
                if overlaps(candidate, (start, end)):
                    raise ConflictError(
                        "Slot overlaps an existing slot",
                        code="slot_overlap",
                        details={"slot_id": slot_id},
                    )
            if any(overlaps(candidate, other) for other in seen):
                raise ConflictError("Slots in the request overlap each other", code="slot_overlap")
            seen.append(candidate)

    def create_slot(
        self, caller: Caller, turf_id: int, start_time: datetime, end_time: datetime
    ) -> Dict[str, Any]:
        turf = self._get_turf(turf_id)
        authorize("create_slot", caller, turf)
        interval = self._validate_interval(start_time, end_time)

        with self.locks.hold(turf_key(turf_id)):
            self._check_overlaps(turf_id, [interval])
            slot = self.store.create_document(
                "slot",
                {
                    "owner_id": turf["owner_id"],
                    "turf_id": turf_id,
                    "start_time": interval[0],
                    "end_time": interval[1],
                    "is_booked": False,
                },
            )
        logger.info("slot_created", extra={"slot_id": slot["id"], "turf_id": turf_id})
        return slot

    def create_slots_batch(
        self,
        caller: Caller,
        turf_id: int,
        start_date: date,
        start_time_of_day: time,
        duration_minutes: int,
        repeat_days: int,
    ) -> List[Dict[str, Any]]:
        """Create a recurring daily schedule. Either every slot is created or none is."""
        turf = self._get_turf(turf_id)
        authorize("create_slot", caller, turf)
        if duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive", code="invalid_duration")
        if not 1 <= repeat_days <= MAX_REPEAT_DAYS:
            raise ValidationError(
                f"repeat_days must be between 1 and {MAX_REPEAT_DAYS}", code="invalid_repeat_days"
            )
        intervals = batch_intervals(start_date, start_time_of_day, duration_minutes, repeat_days)

        created: List[Dict[str, Any]] = []
        with self.locks.hold(turf_key(turf_id)):
            self._check_overlaps(turf_id, intervals)
            try:
                for start, end in intervals:
                    created.append(
                        self.store.create_document(
                            "slot",
                            {
                                "owner_id": turf["owner_id"],
                                "turf_id": turf_id,
                                "start_time": start,
                                "end_time": end,
                                "is_booked": False,
                            },
                        )
                    )
            except Exception:
                logger.error(
                    "slot_batch_rollback",
                    extra={"turf_id": turf_id, "inserted": len(created), "requested": repeat_days},
                )
                for slot in created:
                    self.store.delete_document("slot", slot["id"])
                raise
        logger.info("slot_batch_created", extra={"turf_id": turf_id, "count": len(created)})
        return created

    def update_slot(self, caller: Caller, slot_id: int, patch: Dict[str, Any]) -> Dict[str, Any]:
        slot = self.get_slot(slot_id)
        authorize("update_slot", caller, slot)
        changes = {k: v for k, v in patch.items() if k in SLOT_FIELDS and v is not None}
        if not changes:
            return slot

        with self.locks.hold(turf_key(slot["turf_id"])), self.locks.hold(slot_key(slot_id)):
            slot = self.get_slot(slot_id)
            if slot["is_booked"]:
                raise ConflictError("Cannot re-time a booked slot", code="slot_booked")
            interval = self._validate_interval(
                changes.get("start_time", slot["start_time"]),
                changes.get("end_time", slot["end_time"]),
            )
            self._check_overlaps(slot["turf_id"], [interval], exclude_id=slot_id)
            updated = self.store.update_document(
                "slot", slot_id, {"start_time": interval[0], "end_time": interval[1]}
            )
        if updated is None:
            raise NotFoundError("Slot not found", code="slot_not_found")
        return updated

    def delete_slot(self, caller: Caller, slot_id: int) -> None:
        slot = self.get_slot(slot_id)
        authorize("delete_slot", caller, slot)

        with self.locks.hold(slot_key(slot_id)):
            slot = self.get_slot(slot_id)
            if slot["is_booked"]:
                logger.warning("slot_delete_refused_booked", extra={"slot_id": slot_id})
                raise ConflictError("Cannot delete a booked slot", code="slot_booked")
            if not self.store.delete_document("slot", slot_id):
                raise NotFoundError("Slot not found", code="slot_not_found")
        logger.info("slot_deleted", extra={"slot_id": slot_id})

    def list_slots(
        self, owner_id: Optional[int] = None, turf_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, Any] = {}
        if owner_id is not None:
            filters["owner_id"] = owner_id
        if turf_id is not None:
            filters["turf_id"] = turf_id
        return self.store.get_documents("slot", filters, sort="start_time")

    def list_available(
        self, owner_id: Optional[int] = None, turf_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return [s for s in self.list_slots(owner_id, turf_id) if not s["is_booked"]]

    def enrich(self, slots: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach turf name, sport and owner display name for listing views."""
        turfs: Dict[int, Optional[Dict[str, Any]]] = {}
        owners: Dict[int, Optional[Dict[str, Any]]] = {}
        out = []
        for slot in slots:
            if slot["turf_id"] not in turfs:
                turfs[slot["turf_id"]] = self.store.get_document("turf", slot["turf_id"])
            if slot["owner_id"] not in owners:
                owners[slot["owner_id"]] = self.store.get_document("user", slot["owner_id"])
            turf, owner = turfs[slot["turf_id"]], owners[slot["owner_id"]]
            out.append(
                dict(
                    slot,
                    turf_name=turf["name"] if turf else None,
                    sport_type=turf["sport_type"] if turf else None,
                    owner_name=(owner.get("business_name") or owner["full_name"]) if owner else None,
                )
            )
        return out
