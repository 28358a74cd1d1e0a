from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, UniqueConstraint, text
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from pricing.src.models import LaborLine, PartLine


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive values are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in and out, whether or not the backend keeps the offset (SQLite does not)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class OrderStatus(str, Enum):
    NEW = "NEW"
    TRIAGE = "TRIAGE"
    QUOTE = "QUOTE"
    APPROVED = "APPROVED"
    SCHEDULED = "SCHEDULED"
    INSERVICE = "INSERVICE"
    READY = "READY"
    DELIVERED = "DELIVERED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


class OrderCategory(str, Enum):
    engine = "engine"
    transmission = "transmission"
    suspension = "suspension"
    electrical = "electrical"
    brakes = "brakes"
    other = "other"


class Priority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class LocationKind(str, Enum):
    pickup = "pickup"
    dropoff = "dropoff"
    service = "service"


class PaymentProvider(str, Enum):
    LIQPAY = "LIQPAY"
    STRIPE = "STRIPE"
    WEB3 = "WEB3"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    CRYPTO = "CRYPTO"
    CASH = "CASH"


class PaymentPurpose(str, Enum):
    ADVANCE = "ADVANCE"
    REPAIR = "REPAIR"
    INSURANCE = "INSURANCE"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class TowStatus(str, Enum):
    REQUESTED = "REQUESTED"
    ASSIGNED = "ASSIGNED"
    ENROUTE = "ENROUTE"
    ARRIVED = "ARRIVED"
    LOADING = "LOADING"
    INTRANSIT = "INTRANSIT"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OfferStatus(str, Enum):
    OFFERED = "OFFERED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class Client(SQLModel, table=True):
    __tablename__ = "clients"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    phone: str = Field(unique=True, index=True)
    email: Optional[str] = None
    loyalty_points: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Vehicle(SQLModel, table=True):
    __tablename__ = "vehicles"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="clients.id", index=True)
    plate: str = Field(unique=True)
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    mileage: Optional[int] = None


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: int = Field(foreign_key="clients.id", index=True)
    vehicle_id: int = Field(foreign_key="vehicles.id", index=True)
    category: str = OrderCategory.other.value
    description: Optional[str] = None
    channel: str = "web"
    priority: Priority = Priority.normal
    status: OrderStatus = Field(default=OrderStatus.NEW, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class OrderLocation(SQLModel, table=True):
    __tablename__ = "order_locations"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    kind: LocationKind
    lat: float
    lng: float
    address: Optional[str] = None


class Estimate(SQLModel, table=True):
    __tablename__ = "estimates"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", unique=True)
    parts_json: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    labor_json: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    total: float = 0.0
    currency: str = "UAH"
    approved: bool = False
    approved_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    valid_until: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def parts(self) -> list[PartLine]:
        return [PartLine.model_validate(p) for p in self.parts_json or []]

    @property
    def labor(self) -> list[LaborLine]:
        return [LaborLine.model_validate(l) for l in self.labor_json or []]


class CalcProfile(SQLModel, table=True):
    __tablename__ = "calc_profiles"

    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True)
    name: str
    parts_coeff: float = 1.0
    labor_coeff: float = 1.0
    night_coeff: float = 1.1
    urgent_coeff: float = 1.2
    suv_coeff: float = 1.08
    labor_rate: float = 400.0
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Payment(SQLModel, table=True):
    __tablename__ = "payments"
    # one live PENDING invoice per fingerprint; concurrent creators lose on insert
    __table_args__ = (
        Index(
            "uq_payments_pending_fingerprint",
            "fingerprint",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    amount: float
    currency: str = "UAH"
    provider: PaymentProvider = PaymentProvider.LIQPAY
    method: PaymentMethod = PaymentMethod.CARD
    purpose: PaymentPurpose = PaymentPurpose.REPAIR
    status: PaymentStatus = Field(default=PaymentStatus.PENDING, index=True)
    provider_ref: Optional[str] = Field(default=None, unique=True)
    fingerprint: Optional[str] = Field(default=None, index=True)
    idempotency_key: Optional[str] = Field(default=None, index=True)
    invoice_url: Optional[str] = None
    description: Optional[str] = None
    tx_hash: Optional[str] = Field(default=None, unique=True)
    receipt_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)


class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_events"

    id: str = Field(primary_key=True)  # provider event id
    provider: str
    type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    handled: bool = False
    received_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class TowPartner(SQLModel, table=True):
    __tablename__ = "tow_partners"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    phone: Optional[str] = None
    active: bool = True


class TowRequest(SQLModel, table=True):
    __tablename__ = "tow_requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", unique=True)
    distance_km: float
    price: float
    eta_minutes: int
    is_night: bool = False
    status: TowStatus = TowStatus.REQUESTED
    partner_id: Optional[int] = Field(default=None, foreign_key="tow_partners.id")
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    vehicle_info: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class InsuranceOffer(SQLModel, table=True):
    __tablename__ = "insurance_offers"
    __table_args__ = (UniqueConstraint("order_id", "code", name="uq_offer_order_code"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    code: str
    title: str
    price: float
    status: OfferStatus = OfferStatus.OFFERED
    valid_until: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    accepted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class OrderTimeline(SQLModel, table=True):
    __tablename__ = "order_timeline"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", index=True)
    event: str
    actor_id: Optional[int] = None
    details: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
