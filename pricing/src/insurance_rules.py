"""Rule table that decides which insurance products to offer for an order."""

from typing import Optional

from pricing.config.settings import load_pricing_config
from .models import OfferContext, OfferSpec
from .money import round2


class OfferRules:
    """
    Keyword rules on category + description, an always-on road assistance
    product, an old-or-worn vehicle product and a loyalty discount for
    vehicles that keep coming back with the same problem.
    """

    def __init__(self, config: Optional[dict] = None):
        cfg = (config or load_pricing_config())["insurance"]
        self.catalog: dict[str, dict] = cfg["catalog"]
        self.loyalty_min_repeat = int(cfg["loyalty_min_repeat_issues"])
        self.loyalty_discount = float(cfg["loyalty_discount"])
        self.old_age_years = int(cfg["old_vehicle_age_years"])
        self.high_mileage = int(cfg["high_mileage_km"])

    def _spec(self, code: str) -> OfferSpec:
        item = self.catalog[code]
        return OfferSpec(code=code, title=item["title"], price=float(item["price"]))

    def _matches(self, code: str, text: str) -> bool:
        return any(kw.lower() in text for kw in self.catalog[code].get("keywords", []))

    def evaluate(self, ctx: OfferContext) -> list[OfferSpec]:
        text = f"{ctx.category} {ctx.description or ''}".lower()
        offers: list[OfferSpec] = []

        if self._matches("KASKO_GLASS", text):
            offers.append(self._spec("KASKO_GLASS"))
        if self._matches("TPL_PLUS", text):
            offers.append(self._spec("TPL_PLUS"))

        offers.append(self._spec("ROAD_ASSIST"))

        age = ctx.today.year - ctx.vehicle_year if ctx.vehicle_year else 0
        if age >= self.old_age_years or (ctx.mileage or 0) > self.high_mileage:
            offers.append(self._spec("MECH_BREAK"))

        if ctx.repeat_issues >= self.loyalty_min_repeat:
            factor = 1 - self.loyalty_discount
            offers = [o.model_copy(update={"price": round2(o.price * factor)}) for o in offers]

        return offers


def suggest_offers(ctx: OfferContext) -> list[OfferSpec]:
    return OfferRules().evaluate(ctx)
