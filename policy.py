"""
Access policy: who may do what.

Every rule is a pure predicate over the caller and, where relevant, the target
document. `authorize` looks the rule up by action name and raises
AuthorizationError on denial.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from errors import AuthorizationError
from schemas import BookingStatus, Role


@dataclass(frozen=True)
class Caller:
    id: int
    role: Role

    @classmethod
    def from_user(cls, user: Dict[str, Any]) -> "Caller":
        return cls(id=user["id"], role=Role(user["role"]))


def can_create_turf(role: Role) -> bool:
    return role == Role.OWNER


def can_manage_turf(caller: Caller, turf: Dict[str, Any]) -> bool:
    return caller.role == Role.OWNER and turf["owner_id"] == caller.id


def can_manage_slots(role: Role) -> bool:
    return role == Role.OWNER


def can_create_slot(caller: Caller, turf: Dict[str, Any]) -> bool:
    return can_manage_turf(caller, turf)


def can_delete_slot(caller: Caller, slot: Dict[str, Any]) -> bool:
    return caller.role == Role.OWNER and slot["owner_id"] == caller.id


def can_book(caller: Caller) -> bool:
    return caller.role == Role.CUSTOMER


def can_mutate_booking(caller: Caller, booking: Dict[str, Any]) -> bool:
    if caller.role == Role.OWNER:
        return booking["owner_id"] == caller.id
    if caller.role == Role.CUSTOMER:
        return booking["customer_id"] == caller.id
    return False


def can_set_booking_status(caller: Caller, status: str) -> bool:
    # Customers can only walk away from a booking; owners drive the rest.
    if caller.role == Role.OWNER:
        return True
    return status == BookingStatus.CANCELLED


def can_view_stats(caller: Caller) -> bool:
    return caller.role == Role.OWNER


RULES: Dict[str, Callable[..., bool]] = {
    "create_turf": lambda caller, _: can_create_turf(caller.role),
    "manage_turf": can_manage_turf,
    "manage_slots": lambda caller, _: can_manage_slots(caller.role),
    "create_slot": can_create_slot,
    "update_slot": can_delete_slot,
    "delete_slot": can_delete_slot,
    "create_booking": lambda caller, _: can_book(caller),
    "view_booking": can_mutate_booking,
    "mutate_booking": can_mutate_booking,
    "set_booking_status": can_set_booking_status,
    "view_stats": lambda caller, _: can_view_stats(caller),
}

DENIAL_MESSAGES = {
    "create_turf": "Owner role required",
    "manage_turf": "Turf does not belong to this owner",
    "manage_slots": "Owner role required to manage slots",
    "create_slot": "Turf does not belong to this owner",
    "update_slot": "Not authorized to update this slot",
    "delete_slot": "Not authorized to delete this slot",
    "create_booking": "Customer role required",
    "view_booking": "Not authorized to view this booking",
    "mutate_booking": "Not authorized to modify this booking",
    "set_booking_status": "Not allowed to set this booking status",
    "view_stats": "Owner role required",
}


def is_allowed(action: str, caller: Caller, resource: Optional[Any] = None) -> bool:
    return RULES[action](caller, resource)


def authorize(action: str, caller: Caller, resource: Optional[Any] = None) -> None:
    if not is_allowed(action, caller, resource):
        raise AuthorizationError(DENIAL_MESSAGES[action], code=f"forbidden_{action}")
