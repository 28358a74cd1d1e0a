"""Value types shared by the pricing calculators and the persistence layer."""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field


# ─── Geography ───

class GeoPoint(BaseModel):
    """Latitude/longitude pair in decimal degrees."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


class TowQuote(BaseModel):
    distance_km: float
    price: float
    eta_minutes: int
    is_night: bool


# ─── Estimate line items ───

class PartLine(BaseModel):
    """Single priced part on an estimate."""
    name: str
    qty: float
    unit: str = "pcs"
    unit_price: float
    total: float


class LaborLine(BaseModel):
    """Single priced labor task on an estimate."""
    name: str
    hours: float
    rate: float
    total: float


class EstimateFlags(BaseModel):
    night: bool = False
    urgent: bool = False
    suv: bool = False


class Coefficients(BaseModel):
    """Resolved pricing profile: base coefficients, modifiers and hourly rate."""
    code: str
    parts: float
    labor: float
    night: float = 1.1
    urgent: float = 1.2
    suv: float = 1.08
    labor_rate: float = 400.0
    profile_id: Optional[int] = None  # set when resolved from a stored CalcProfile


class EstimateBreakdown(BaseModel):
    """Result of one estimate calculation, before persistence."""
    category: str
    profile: str
    parts: list[PartLine]
    labor: list[LaborLine]
    parts_coeff: float
    labor_coeff: float
    labor_rate: float
    parts_cost: float
    labor_cost: float
    labor_hours: float
    total_before_discount: float
    discount_percent: float
    discount_amount: float
    total: float
    summary: str
    recommendations: list[str] = []
    flags: EstimateFlags = EstimateFlags()
    package_name: Optional[str] = None
    comment: Optional[str] = None
    profile_id: Optional[int] = None

    def meta(self) -> dict:
        """Everything except the line items, for storage next to the estimate."""
        return self.model_dump(exclude={"parts", "labor"})


# ─── Insurance ───

class OfferContext(BaseModel):
    """Facts about an order that the offer rules look at."""
    category: str
    description: Optional[str] = None
    vehicle_year: Optional[int] = None
    mileage: Optional[int] = None
    repeat_issues: int = 0
    today: date


class OfferSpec(BaseModel):
    code: str
    title: str
    price: float
