"""
Estimate Calculator - Prices a repair from the order's category template.

Uses:
- Category templates (parts + labor tasks) from config/pricing.yaml
- Profile coefficients (ECONOMY / STANDARD / PREMIUM, or a stored custom profile)
- Night / urgent / SUV modifiers, applied only when the flag is set
- Hourly labor rate (profile override, else the configured fallback)

Every money value is rounded to two decimals before it is summed, so running
the same calculation twice always lands on the same total.
"""

from dataclasses import dataclass, field
from typing import Optional

from pricing.config.settings import load_pricing_config
from .models import Coefficients, EstimateBreakdown, EstimateFlags, LaborLine, PartLine
from .money import round2

FALLBACK_CATEGORY = "other"


@dataclass
class TemplatePart:
    name: str
    qty: float
    unit: str
    base_price: float


@dataclass
class TemplateLabor:
    name: str
    hours: float


@dataclass
class CategoryTemplate:
    """Parts and labor a typical job in this category needs."""
    category: str
    summary: str
    parts: list[TemplatePart] = field(default_factory=list)
    labor: list[TemplateLabor] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


class EstimateCalculator:
    """
    Turns (category, profile, flags, discount) into priced line items.
    Pure: no database, no clock.
    """

    def __init__(self, config: Optional[dict] = None):
        cfg = (config or load_pricing_config())["estimate"]
        self.labor_rate: float = float(cfg["labor_rate"])
        self.discount_max: float = float(cfg["discount_max_percent"])
        self._profiles: dict[str, float] = {k.upper(): float(v) for k, v in cfg["profiles"].items()}
        self._modifiers: dict[str, float] = {k: float(v) for k, v in cfg["modifiers"].items()}
        self._templates: dict[str, CategoryTemplate] = {}
        self._load_templates(cfg["templates"])

    def _load_templates(self, raw: dict):
        for category, tpl in raw.items():
            self._templates[category.lower()] = CategoryTemplate(
                category=category.lower(),
                summary=tpl["summary"],
                parts=[TemplatePart(p["name"], float(p["qty"]), p.get("unit", "pcs"), float(p["base_price"]))
                       for p in tpl.get("parts", [])],
                labor=[TemplateLabor(l["name"], float(l["hours"])) for l in tpl.get("labor", [])],
                recommendations=list(tpl.get("recommendations", [])),
            )

    @property
    def builtin_profiles(self) -> list[str]:
        return sorted(self._profiles)

    def get_template(self, category: Optional[str]) -> CategoryTemplate:
        """Template for the category. Unknown categories get the generic one."""
        key = (category or FALLBACK_CATEGORY).strip().lower()
        return self._templates.get(key, self._templates[FALLBACK_CATEGORY])

    def resolve_profile(self, code: str, custom: Optional[Coefficients] = None) -> Optional[Coefficients]:
        """
        Custom (stored) profile wins over the built-ins.
        Returns None if the code is unknown.
        """
        if custom is not None:
            return custom
        base = self._profiles.get((code or "").upper())
        if base is None:
            return None
        return Coefficients(
            code=code.upper(),
            parts=base,
            labor=base,
            night=self._modifiers["night"],
            urgent=self._modifiers["urgent"],
            suv=self._modifiers["suv"],
            labor_rate=self.labor_rate,
        )

    def clamp_discount(self, percent: Optional[float]) -> float:
        return max(0.0, min(self.discount_max, float(percent or 0)))

    def calculate(
        self,
        category: Optional[str],
        coeffs: Coefficients,
        flags: Optional[EstimateFlags] = None,
        discount_percent: Optional[float] = None,
        summary: Optional[str] = None,
        comment: Optional[str] = None,
        package_name: Optional[str] = None,
    ) -> EstimateBreakdown:
        flags = flags or EstimateFlags()
        template = self.get_template(category)

        modifier = 1.0
        if flags.night:
            modifier *= coeffs.night
        if flags.urgent:
            modifier *= coeffs.urgent
        if flags.suv:
            modifier *= coeffs.suv
        parts_coeff = coeffs.parts * modifier
        labor_coeff = coeffs.labor * modifier

        parts: list[PartLine] = []
        for p in template.parts:
            unit_price = round2(p.base_price * parts_coeff)
            parts.append(PartLine(
                name=p.name,
                qty=p.qty,
                unit=p.unit,
                unit_price=unit_price,
                total=round2(unit_price * p.qty),
            ))

        rate = round2(coeffs.labor_rate * labor_coeff)
        labor = [
            LaborLine(name=l.name, hours=l.hours, rate=rate, total=round2(l.hours * rate))
            for l in template.labor
        ]

        parts_cost = round2(sum(p.total for p in parts))
        labor_cost = round2(sum(l.total for l in labor))
        base_total = round2(parts_cost + labor_cost)
        discount = self.clamp_discount(discount_percent)
        discount_amount = round2(base_total * discount / 100)
        total = round2(max(0.0, base_total - discount_amount))

        return EstimateBreakdown(
            category=template.category,
            profile=coeffs.code,
            parts=parts,
            labor=labor,
            parts_coeff=parts_coeff,
            labor_coeff=labor_coeff,
            labor_rate=coeffs.labor_rate,
            parts_cost=parts_cost,
            labor_cost=labor_cost,
            labor_hours=round2(sum(l.hours for l in labor)),
            total_before_discount=base_total,
            discount_percent=discount,
            discount_amount=discount_amount,
            total=total,
            summary=summary.strip() if summary and summary.strip() else template.summary,
            recommendations=template.recommendations,
            flags=flags,
            package_name=package_name.strip() if package_name and package_name.strip() else None,
            comment=comment.strip() if comment and comment.strip() else None,
            profile_id=coeffs.profile_id,
        )
