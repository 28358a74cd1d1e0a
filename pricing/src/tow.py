"""Tow pricing: distance, price and ETA between two points at a given time."""

from datetime import datetime
from typing import Optional

from geopy.distance import great_circle

from pricing.config.settings import load_pricing_config
from .models import GeoPoint, TowQuote
from .money import round1, round_whole

EARTH_RADIUS_KM = 6371.0


class InvalidRoute(ValueError):
    """Route that cannot be quoted (same point twice, or too far)."""


class TowCalculator:
    def __init__(self, config: Optional[dict] = None):
        cfg = (config or load_pricing_config())["tow"]
        self.base_fee = float(cfg["base_fee"])
        self.km_rate = float(cfg["km_rate"])
        self.night_multiplier = float(cfg["night_multiplier"])
        self.night_start_hour = int(cfg["night_start_hour"])
        self.night_end_hour = int(cfg["night_end_hour"])
        self.avg_speed_kmph = float(cfg["avg_speed_kmph"])
        self.buffer_minutes = int(cfg["buffer_minutes"])
        self.max_distance_km = float(cfg["max_distance_km"])

    def is_night(self, now: datetime) -> bool:
        return now.hour >= self.night_start_hour or now.hour <= self.night_end_hour

    def distance_km(self, origin: GeoPoint, destination: GeoPoint) -> float:
        return great_circle(origin.as_tuple(), destination.as_tuple(), radius=EARTH_RADIUS_KM).km

    def quote(self, origin: GeoPoint, destination: GeoPoint, now: datetime) -> TowQuote:
        """
        price = max(BASE_FEE + KM_RATE * km, BASE_FEE), times the night multiplier at night.
        eta   = drive time at average speed plus a fixed buffer.
        The clock is always supplied by the caller.
        """
        if origin.as_tuple() == destination.as_tuple():
            raise InvalidRoute("origin and destination are the same point")

        dist = self.distance_km(origin, destination)
        if dist > self.max_distance_km:
            raise InvalidRoute(f"route of {dist:.1f} km exceeds {self.max_distance_km:.0f} km")

        night = self.is_night(now)
        base = max(self.base_fee + self.km_rate * dist, self.base_fee)
        price = base * (self.night_multiplier if night else 1.0)
        eta = round_whole(dist / self.avg_speed_kmph * 60 + self.buffer_minutes)

        return TowQuote(
            distance_km=round1(dist),
            price=float(round_whole(price)),
            eta_minutes=eta,
            is_night=night,
        )


_default: Optional[TowCalculator] = None


def calculate_tow_quote(origin: GeoPoint, destination: GeoPoint, now: datetime) -> TowQuote:
    """Module-level shortcut using tariffs from pricing.yaml."""
    global _default
    if _default is None:
        _default = TowCalculator()
    return _default.quote(origin, destination, now)
