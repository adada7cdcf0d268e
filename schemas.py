"""
Database Schemas for the turf booking backend

Each Pydantic model describes one stored collection. Collection name = lowercase class name.

- User -> user
- Turf -> turf
- Slot -> slot
- Booking -> booking

Documents are keyed by an integer `id` handed out by the store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class Role(str, Enum):
    CUSTOMER = "customer"
    OWNER = "owner"


class SportType(str, Enum):
    CRICKET = "cricket"
    FOOTBALL = "football"
    BADMINTON = "badminton"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


def to_naive_utc(value: datetime) -> datetime:
    """Stored datetimes are naive UTC so they compare across backends."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Document(BaseModel):
    # Enums are kept as plain strings so documents store cleanly in any backend.
    model_config = ConfigDict(use_enum_values=True)


class User(Document):
    id: int
    username: str = Field(..., min_length=3, description="Unique login name")
    password_hash: str = Field(..., description="BCrypt hashed password")
    email: EmailStr = Field(..., description="Unique email address")
    full_name: str = Field(..., description="Full name")
    role: Role = Field(Role.CUSTOMER, description="customer | owner")
    business_name: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None


class Turf(Document):
    id: int
    owner_id: int = Field(..., description="Owning user id")
    name: str = Field(..., description="Turf name")
    description: Optional[str] = Field(None, description="Short description")
    sport_type: SportType
    max_players: int = Field(..., gt=0, description="Maximum players per booking")
    duration: int = Field(..., gt=0, description="Default slot length in minutes")
    price: int = Field(..., ge=0, description="Price per slot in cents")
    amenities: List[str] = Field(default_factory=list, description="Amenity flags")
    location: Optional[str] = Field(None, description="City/Area")


class Slot(Document):
    id: int
    owner_id: int = Field(..., description="Denormalized turf owner")
    turf_id: int
    start_time: datetime
    end_time: datetime
    is_booked: bool = Field(False, description="True while a non-cancelled booking holds the slot")

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class Booking(Document):
    id: int
    customer_id: int
    owner_id: int = Field(..., description="Copied from the slot at creation")
    turf_id: int = Field(..., description="Copied from the slot at creation")
    slot_id: int
    status: BookingStatus = Field(BookingStatus.CONFIRMED)
    team_name: Optional[str] = None
    player_count: int = Field(1, ge=1)
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
