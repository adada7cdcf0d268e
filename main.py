import logging
import os
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from bookings import BookingService
from database import Store, create_store
from errors import AuthorizationError, DuplicateError, NotFoundError, register_error_handlers
from locks import email_key, resource_locks, username_key
from policy import Caller, authorize
from schemas import (
    Booking as BookingSchema,
    BookingStatus,
    Role,
    Slot as SlotSchema,
    SportType,
    Turf as TurfSchema,
    User as UserSchema,
)
from slots import MAX_REPEAT_DAYS, SlotService

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------------
# App & Security Config
# ----------------------------------------------------------------------------
app = FastAPI(title="TurfBook API", description="Turf slot booking backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

SECRET_KEY = os.getenv("JWT_SECRET", "super-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")

store = create_store()


# ----------------------------------------------------------------------------
# Helpers & Models
# ----------------------------------------------------------------------------
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserOut(BaseModel):
    id: int
    username: str
    email: EmailStr
    full_name: str
    role: Role
    business_name: Optional[str] = None
    phone: Optional[str] = None


class RegisterPayload(BaseModel):
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    email: EmailStr
    full_name: str
    role: Role = Role.CUSTOMER
    business_name: Optional[str] = None
    phone: Optional[str] = None


class CreateTurfPayload(BaseModel):
    name: str
    description: Optional[str] = None
    sport_type: SportType
    max_players: int = Field(..., gt=0)
    duration: int = Field(60, gt=0)
    price: int = Field(..., ge=0)
    amenities: List[str] = []
    location: Optional[str] = None
    owner_id: Optional[int] = None


class UpdateTurfPayload(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    sport_type: Optional[SportType] = None
    max_players: Optional[int] = Field(None, gt=0)
    duration: Optional[int] = Field(None, gt=0)
    price: Optional[int] = Field(None, ge=0)
    amenities: Optional[List[str]] = None
    location: Optional[str] = None


class CreateSlotPayload(BaseModel):
    turf_id: int
    start_time: datetime
    end_time: datetime
    owner_id: Optional[int] = None


class BatchSlotPayload(BaseModel):
    turf_id: int
    start_date: date
    start_time: time = Field(..., description="Time of day of every slot")
    duration_minutes: int = Field(..., gt=0)
    repeat_days: int = Field(1, ge=1, le=MAX_REPEAT_DAYS)
    owner_id: Optional[int] = None


class UpdateSlotPayload(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class CreateBookingPayload(BaseModel):
    slot_id: int
    turf_id: int
    team_name: Optional[str] = None
    player_count: int = Field(1, ge=1)
    notes: Optional[str] = None
    status: BookingStatus = BookingStatus.CONFIRMED
    customer_id: Optional[int] = None


class UpdateBookingPayload(BaseModel):
    status: Optional[BookingStatus] = None
    notes: Optional[str] = None


class SlotOut(SlotSchema):
    turf_name: Optional[str] = None
    sport_type: Optional[SportType] = None
    owner_name: Optional[str] = None


class BookingOut(BookingSchema):
    turf_name: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class StatsOut(BaseModel):
    total_bookings: int
    bookings_by_status: dict
    bookings_by_turf: dict
    upcoming_bookings: int
    total_turfs: int
    total_slots: int
    available_slots: int


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def get_store() -> Store:
    return store


def get_slot_service(store: Store = Depends(get_store)) -> SlotService:
    return SlotService(store)


def get_booking_service(store: Store = Depends(get_store)) -> BookingService:
    return BookingService(store)


def user_out(user: dict) -> UserOut:
    return UserOut(**{k: v for k, v in user.items() if k in UserOut.model_fields})


def get_current_user(token: str = Depends(oauth2_scheme), store: Store = Depends(get_store)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise credentials_exception

    user = store.get_document("user", user_id)
    if user is None:
        raise credentials_exception
    return user


def get_caller(current_user: dict = Depends(get_current_user)) -> Caller:
    return Caller.from_user(current_user)


def get_turf_or_404(store: Store, turf_id: int) -> dict:
    turf = store.get_document("turf", turf_id)
    if turf is None:
        raise NotFoundError("Turf not found", code="turf_not_found")
    return turf


def require_self(body_id: Optional[int], caller: Caller, field: str) -> None:
    """Clients may echo their own id in the body; any other id is refused."""
    if body_id is not None and body_id != caller.id:
        raise AuthorizationError(
            f"Unauthorized, {field} mismatch", code="forbidden_body_id_mismatch"
        )


# ----------------------------------------------------------------------------
# Root & Health
# ----------------------------------------------------------------------------
@app.get("/")
def read_root():
    return {"message": "TurfBook Backend Running"}


@app.get("/test")
def test_database(store: Store = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": store.backend,
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Connected",
        "collections": [],
    }
    try:
        response["collections"] = store.collection_names()
    except Exception as e:
        logger.warning("database_check_failed", extra={"error": str(e)})
        response["connection_status"] = f"⚠️ Error: {str(e)[:80]}"
    return response


# ----------------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------------
@app.post("/auth/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterPayload, store: Store = Depends(get_store)):
    password_hash = get_password_hash(payload.password)

    # The uniqueness checks and the insert run as one step per username and email.
    with resource_locks.hold(username_key(payload.username)), resource_locks.hold(
        email_key(payload.email)
    ):
        if store.find_one("user", {"username": payload.username}):
            raise DuplicateError("Username already taken", code="username_taken")
        if store.find_one("user", {"email": payload.email}):
            raise DuplicateError("Email already registered", code="email_taken")
        user = store.create_document(
            "user",
            {
                "username": payload.username,
                "password_hash": password_hash,
                "email": payload.email,
                "full_name": payload.full_name,
                "role": payload.role.value,
                "business_name": payload.business_name,
                "phone": payload.phone,
                "created_at": datetime.now(timezone.utc).replace(tzinfo=None),
            },
        )
    logger.info("user_registered", extra={"user_id": user["id"], "role": user["role"]})
    return user_out(user)


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), store: Store = Depends(get_store)):
    user = store.find_one("user", {"username": form_data.username})
    if not user:
        raise HTTPException(status_code=400, detail="Incorrect username or password")
    if not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    access_token = create_access_token({"sub": str(user["id"])})
    return Token(access_token=access_token)


@app.get("/auth/me", response_model=UserOut)
def me(current_user=Depends(get_current_user)):
    return user_out(current_user)


# ----------------------------------------------------------------------------
# Turf Endpoints
# ----------------------------------------------------------------------------
@app.get("/api/turfs", response_model=List[TurfSchema])
def list_turfs(owner_id: Optional[int] = None, store: Store = Depends(get_store)):
    filters = {"owner_id": owner_id} if owner_id is not None else None
    return store.get_documents("turf", filters)


@app.get("/api/turfs/{turf_id}", response_model=TurfSchema)
def get_turf(turf_id: int, store: Store = Depends(get_store)):
    return get_turf_or_404(store, turf_id)


@app.post("/api/turfs", response_model=TurfSchema, status_code=status.HTTP_201_CREATED)
def create_turf(
    payload: CreateTurfPayload,
    caller: Caller = Depends(get_caller),
    store: Store = Depends(get_store),
):
    authorize("create_turf", caller)
    require_self(payload.owner_id, caller, "owner ID")
    data = payload.model_dump(mode="json", exclude={"owner_id"})
    return store.create_document("turf", dict(data, owner_id=caller.id))


@app.put("/api/turfs/{turf_id}", response_model=TurfSchema)
def update_turf(
    turf_id: int,
    payload: UpdateTurfPayload,
    caller: Caller = Depends(get_caller),
    store: Store = Depends(get_store),
):
    turf = get_turf_or_404(store, turf_id)
    authorize("manage_turf", caller, turf)
    changes = payload.model_dump(mode="json", exclude_unset=True, exclude_none=True)
    if not changes:
        return turf
    return store.update_document("turf", turf_id, changes)


@app.delete("/api/turfs/{turf_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_turf(
    turf_id: int,
    caller: Caller = Depends(get_caller),
    store: Store = Depends(get_store),
):
    turf = get_turf_or_404(store, turf_id)
    authorize("manage_turf", caller, turf)
    store.delete_document("turf", turf_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------------
# Slot Endpoints
# ----------------------------------------------------------------------------
@app.get("/api/slots", response_model=List[SlotOut])
def list_slots(
    owner_id: Optional[int] = None,
    turf_id: Optional[int] = None,
    available: bool = False,
    slots: SlotService = Depends(get_slot_service),
):
    if available:
        items = slots.list_available(owner_id, turf_id)
    else:
        items = slots.list_slots(owner_id, turf_id)
    return slots.enrich(items)


@app.get("/api/slots/{slot_id}", response_model=SlotOut)
def get_slot(slot_id: int, slots: SlotService = Depends(get_slot_service)):
    return slots.enrich([slots.get_slot(slot_id)])[0]


@app.post("/api/slots", response_model=SlotOut, status_code=status.HTTP_201_CREATED)
def create_slot(
    payload: CreateSlotPayload,
    caller: Caller = Depends(get_caller),
    slots: SlotService = Depends(get_slot_service),
):
    authorize("manage_slots", caller)
    require_self(payload.owner_id, caller, "owner ID")
    slot = slots.create_slot(caller, payload.turf_id, payload.start_time, payload.end_time)
    return slots.enrich([slot])[0]


@app.post("/api/slots/batch", response_model=List[SlotOut], status_code=status.HTTP_201_CREATED)
def create_slots_batch(
    payload: BatchSlotPayload,
    caller: Caller = Depends(get_caller),
    slots: SlotService = Depends(get_slot_service),
):
    authorize("manage_slots", caller)
    require_self(payload.owner_id, caller, "owner ID")
    created = slots.create_slots_batch(
        caller,
        payload.turf_id,
        payload.start_date,
        payload.start_time,
        payload.duration_minutes,
        payload.repeat_days,
    )
    return slots.enrich(created)


@app.put("/api/slots/{slot_id}", response_model=SlotOut)
def update_slot(
    slot_id: int,
    payload: UpdateSlotPayload,
    caller: Caller = Depends(get_caller),
    slots: SlotService = Depends(get_slot_service),
):
    slot = slots.update_slot(caller, slot_id, payload.model_dump(exclude_unset=True))
    return slots.enrich([slot])[0]


@app.delete("/api/slots/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_slot(
    slot_id: int,
    caller: Caller = Depends(get_caller),
    slots: SlotService = Depends(get_slot_service),
):
    slots.delete_slot(caller, slot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------------
# Booking Endpoints
# ----------------------------------------------------------------------------
@app.get("/api/bookings", response_model=List[BookingOut])
def list_bookings(
    caller: Caller = Depends(get_caller),
    bookings: BookingService = Depends(get_booking_service),
):
    return bookings.enrich(bookings.list_bookings(caller))


@app.get("/api/bookings/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: int,
    caller: Caller = Depends(get_caller),
    bookings: BookingService = Depends(get_booking_service),
):
    return bookings.enrich([bookings.get_booking(caller, booking_id)])[0]


@app.post("/api/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def create_booking(
    payload: CreateBookingPayload,
    caller: Caller = Depends(get_caller),
    bookings: BookingService = Depends(get_booking_service),
):
    authorize("create_booking", caller)
    require_self(payload.customer_id, caller, "customer ID")
    booking = bookings.create_booking(
        caller,
        slot_id=payload.slot_id,
        turf_id=payload.turf_id,
        team_name=payload.team_name,
        player_count=payload.player_count,
        notes=payload.notes,
        status=payload.status,
    )
    return bookings.enrich([booking])[0]


@app.put("/api/bookings/{booking_id}", response_model=BookingOut)
def update_booking(
    booking_id: int,
    payload: UpdateBookingPayload,
    caller: Caller = Depends(get_caller),
    bookings: BookingService = Depends(get_booking_service),
):
    booking = bookings.update_booking(caller, booking_id, payload.model_dump(exclude_unset=True))
    return bookings.enrich([booking])[0]


@app.delete("/api/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_booking(
    booking_id: int,
    caller: Caller = Depends(get_caller),
    bookings: BookingService = Depends(get_booking_service),
):
    bookings.delete_booking(caller, booking_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------------
# Owner Dashboard
# ----------------------------------------------------------------------------
@app.get("/api/stats", response_model=StatsOut)
def owner_stats(caller: Caller = Depends(get_caller), store: Store = Depends(get_store)):
    authorize("view_stats", caller)
    bookings = store.get_documents("booking", {"owner_id": caller.id})
    slots = store.get_documents("slot", {"owner_id": caller.id})

    upcoming = [
        b for b in bookings
        if b["status"] not in (BookingStatus.COMPLETED, BookingStatus.CANCELLED)
    ]
    return StatsOut(
        total_bookings=len(bookings),
        bookings_by_status=dict(Counter(b["status"] for b in bookings)),
        bookings_by_turf=dict(Counter(str(b["turf_id"]) for b in bookings)),
        upcoming_bookings=len(upcoming),
        total_turfs=store.count_documents("turf", {"owner_id": caller.id}),
        total_slots=len(slots),
        available_slots=sum(1 for s in slots if not s["is_booked"]),
    )


# ----------------------------------------------------------------------------
# Schema exposure for DB viewer
# ----------------------------------------------------------------------------
@app.get("/schema")
def get_schema():
    return {
        "user": UserSchema.model_json_schema(),
        "turf": TurfSchema.model_json_schema(),
        "slot": SlotSchema.model_json_schema(),
        "booking": BookingSchema.model_json_schema(),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
