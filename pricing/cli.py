#!/usr/bin/env python3
"""
Price checks from the command line, using the same calculators as the API.

Usage:
  # Tow quote between two points (time defaults to now, UTC)
  python -m pricing.cli tow-quote --from 50.45,30.52 --to 50.40,30.62
  python -m pricing.cli tow-quote --from 50.45,30.52 --to 50.40,30.62 --at 2025-01-10T23:00

  # Repair estimate for a category
  python -m pricing.cli estimate --category engine --profile PREMIUM --night --discount 10
  python -m pricing.cli estimate --list-categories

  # Insurance offers for a vehicle
  python -m pricing.cli offers --category glass --year 2010 --mileage 150000 --repeat 2
"""

import argparse
from datetime import date, datetime, timezone
from typing import Optional

from pricing.src.estimator import EstimateCalculator
from pricing.src.insurance_rules import OfferRules
from pricing.src.models import EstimateFlags, GeoPoint, OfferContext
from pricing.src.tow import InvalidRoute, TowCalculator


def parse_point(value: str) -> GeoPoint:
    try:
        lat, lng = (float(v) for v in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LAT,LNG, got {value!r}")
    return GeoPoint(lat=lat, lng=lng)


def run_tow_quote(args):
    now = datetime.fromisoformat(args.at) if args.at else datetime.now(timezone.utc)
    try:
        quote = TowCalculator().quote(args.origin, args.destination, now)
    except InvalidRoute as e:
        print(f"Cannot quote: {e}")
        return 1

    print(f"{'='*60}")
    print(f"TOW QUOTE @ {now:%Y-%m-%d %H:%M}{' (night tariff)' if quote.is_night else ''}")
    print(f"{'='*60}")
    print(f"Distance: {quote.distance_km} km")
    print(f"Price:    {quote.price:.0f} UAH")
    print(f"ETA:      {quote.eta_minutes} min")
    return 0


def run_estimate(args):
    calc = EstimateCalculator()
    if args.list_categories:
        print("Categories:")
        for name in ("engine", "transmission", "electrical", "suspension", "brakes", "other"):
            print(f"  - {name}: {calc.get_template(name).summary}")
        print(f"\nProfiles: {', '.join(calc.builtin_profiles)}")
        return 0

    coeffs = calc.resolve_profile(args.profile)
    if coeffs is None:
        print(f"Unknown profile {args.profile}. Use one of: {', '.join(calc.builtin_profiles)}")
        return 1
    flags = EstimateFlags(night=args.night, urgent=args.urgent, suv=args.suv)
    result = calc.calculate(args.category, coeffs, flags=flags, discount_percent=args.discount)

    print(f"{'='*60}")
    print(f"ESTIMATE: {result.category} | profile {result.profile}")
    print(f"{result.summary}")
    print(f"{'='*60}")
    print("\nPARTS:")
    for p in result.parts:
        print(f"  - {p.name}: {p.qty:g} {p.unit} x {p.unit_price:.2f} = {p.total:.2f}")
    print("\nLABOR:")
    for l in result.labor:
        print(f"  - {l.name}: {l.hours:g} h x {l.rate:.2f} = {l.total:.2f}")
    print(f"\nSubtotal: {result.total_before_discount:.2f}")
    if result.discount_amount:
        print(f"Discount: -{result.discount_amount:.2f} ({result.discount_percent:g}%)")
    print(f"TOTAL:    {result.total:.2f} UAH")
    if result.recommendations:
        print("\nRecommended: " + "; ".join(result.recommendations))
    return 0


def run_offers(args):
    ctx = OfferContext(
        category=args.category,
        description=args.description,
        vehicle_year=args.year,
        mileage=args.mileage,
        repeat_issues=args.repeat,
        today=date.today(),
    )
    offers = OfferRules().evaluate(ctx)
    print(f"{'='*60}")
    print(f"INSURANCE OFFERS: {args.category}")
    print(f"{'='*60}")
    for o in offers:
        print(f"  - {o.code}: {o.title} | {o.price:.2f} UAH")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="AutoAssist pricing calculators")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # tow-quote
    tp = subparsers.add_parser("tow-quote", help="Tow price, distance and ETA")
    tp.add_argument("--from", dest="origin", type=parse_point, required=True, help="LAT,LNG")
    tp.add_argument("--to", dest="destination", type=parse_point, required=True, help="LAT,LNG")
    tp.add_argument("--at", help="ISO time for the night tariff (default: now, UTC)")
    tp.set_defaults(func=run_tow_quote)

    # estimate
    ep = subparsers.add_parser("estimate", help="Repair estimate from a category template")
    ep.add_argument("--category", default="other", help="engine, transmission, electrical, ...")
    ep.add_argument("--profile", default="STANDARD", help="ECONOMY, STANDARD or PREMIUM")
    ep.add_argument("--night", action="store_true")
    ep.add_argument("--urgent", action="store_true")
    ep.add_argument("--suv", action="store_true")
    ep.add_argument("--discount", type=float, default=0, help="Percent, clamped to 0-80")
    ep.add_argument("--list-categories", action="store_true")
    ep.set_defaults(func=run_estimate)

    # offers
    op = subparsers.add_parser("offers", help="Insurance offers for a vehicle")
    op.add_argument("--category", required=True)
    op.add_argument("--description")
    op.add_argument("--year", type=int, help="Vehicle model year")
    op.add_argument("--mileage", type=int)
    op.add_argument("--repeat", type=int, default=0, help="Earlier orders with the same issue")
    op.set_defaults(func=run_offers)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
