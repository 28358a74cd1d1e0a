from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from backend.models import (
    OrderCategory,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
    Priority,
    TowStatus,
)
from pricing.src.models import EstimateFlags, GeoPoint


class Role(str, Enum):
    admin = "admin"
    service_manager = "service_manager"
    dispatcher = "dispatcher"
    mechanic = "mechanic"
    customer = "customer"


STAFF_ROLES = {Role.admin, Role.service_manager, Role.dispatcher}


class Actor(BaseModel):
    """Authenticated caller. Authentication itself happens outside this service."""
    id: int
    role: Role
    client_id: Optional[int] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def owns(self, client_id: int) -> bool:
        return self.role == Role.customer and self.client_id is not None and self.client_id == client_id


# ─── Orders ───

class OrderCreate(BaseModel):
    client_id: int
    vehicle_id: int
    category: OrderCategory = OrderCategory.other
    description: Optional[str] = None
    channel: str = "web"
    priority: Priority = Priority.normal
    pickup: Optional[GeoPoint] = None
    dropoff: Optional[GeoPoint] = None

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, value):
        if isinstance(value, str):
            return value.strip().lower() or OrderCategory.other.value
        return value


class TransitionRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


class CompletionEvidence(BaseModel):
    photos: list[int] = Field(default_factory=list, max_length=10)  # attachment ids
    coords: Optional[GeoPoint] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)


# ─── Estimates ───

class EstimateCalcRequest(BaseModel):
    profile: str = "STANDARD"
    night: bool = False
    urgent: bool = False
    suv: bool = False
    discount_percent: Optional[float] = None
    summary: Optional[str] = None
    comment: Optional[str] = None
    package_name: Optional[str] = None

    @property
    def flags(self) -> EstimateFlags:
        return EstimateFlags(night=self.night, urgent=self.urgent, suv=self.suv)


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class CalcProfileCreate(BaseModel):
    code: str = Field(..., min_length=2, max_length=32)
    name: str
    parts_coeff: float = Field(1.0, gt=0)
    labor_coeff: float = Field(1.0, gt=0)
    night_coeff: float = Field(1.1, gt=0)
    urgent_coeff: float = Field(1.2, gt=0)
    suv_coeff: float = Field(1.08, gt=0)
    labor_rate: float = Field(400.0, gt=0)
    active: bool = True


class CalcProfileUpdate(BaseModel):
    name: Optional[str] = None
    parts_coeff: Optional[float] = Field(None, gt=0)
    labor_coeff: Optional[float] = Field(None, gt=0)
    night_coeff: Optional[float] = Field(None, gt=0)
    urgent_coeff: Optional[float] = Field(None, gt=0)
    suv_coeff: Optional[float] = Field(None, gt=0)
    labor_rate: Optional[float] = Field(None, gt=0)
    active: Optional[bool] = None


# ─── Tow ───

class TowQuoteRequest(BaseModel):
    origin: Optional[GeoPoint] = Field(None, alias="from")
    destination: Optional[GeoPoint] = Field(None, alias="to")

    model_config = {"populate_by_name": True}


class DriverInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle: Optional[str] = None


class TowAssignRequest(BaseModel):
    partner_id: int
    driver: Optional[DriverInfo] = None


class TowStatusRequest(BaseModel):
    status: TowStatus


# ─── Payments ───

class InvoiceRequest(BaseModel):
    amount: float = Field(..., gt=0)
    currency: str = "UAH"
    purpose: PaymentPurpose = PaymentPurpose.REPAIR
    provider: PaymentProvider = PaymentProvider.LIQPAY
    method: PaymentMethod = PaymentMethod.CARD
    description: Optional[str] = None
    idempotency_key: Optional[str] = None


class InvoiceResult(BaseModel):
    payment: Payment
    invoice_url: Optional[str] = None
    reused: bool = False


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    INVOICE_PAID = "invoice.paid"

    @property
    def is_success(self) -> bool:
        return self in (EventKind.PAYMENT_SUCCEEDED, EventKind.INVOICE_PAID)


class ProviderEvent(BaseModel):
    """Provider callback normalized once at the boundary."""
    event_id: str = Field(..., min_length=1)
    provider: PaymentProvider
    kind: EventKind
    provider_ref: Optional[str] = None
    order_id: Optional[int] = None
    payment_id: Optional[int] = None
    amount: Optional[float] = None
    payload: dict[str, Any] = {}


class WebhookResult(BaseModel):
    replayed: bool = False
    payment_id: Optional[int] = None
    order_id: Optional[int] = None
    status: Optional[PaymentStatus] = None


class Web3VerifyRequest(BaseModel):
    payment_id: int
    tx_hash: str


class OrderProof(BaseModel):
    order_id: int
    proof_hash: str
    evidence: dict[str, Any]
    created_at: datetime
