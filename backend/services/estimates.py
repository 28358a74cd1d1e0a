"""
Estimate persistence around the pure calculator.

There is exactly one estimate per order. Recalculating replaces its lines
and totals and drops any earlier approval; it never adds up.
"""

from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlmodel import Session, select

from backend.errors import InvalidInputError, NotFoundError
from backend.models import Estimate, Order, OrderStatus, as_utc, utcnow
from backend.schemas import Actor, EstimateCalcRequest
from backend.services import calc_profiles, timeline
from backend.services.dispatch import Dispatcher, NotificationType, default_dispatcher
from backend.services.orders import advance, ensure_open, ensure_staff, ensure_staff_or_owner, get_order
from pricing.config.settings import DEFAULT_CURRENCY, ESTIMATE_VALID_DAYS
from pricing.src.estimator import EstimateCalculator

_calculator: Optional[EstimateCalculator] = None


def get_calculator() -> EstimateCalculator:
    global _calculator
    if _calculator is None:
        _calculator = EstimateCalculator()
    return _calculator


def find_estimate(session: Session, order_id: int) -> Optional[Estimate]:
    return session.exec(select(Estimate).where(Estimate.order_id == order_id)).first()


def _require_estimate(session: Session, order: Order) -> Estimate:
    estimate = find_estimate(session, order.id)
    if estimate is None:
        raise NotFoundError("ESTIMATE_NOT_FOUND", f"Order {order.id} has no estimate")
    return estimate


def get_estimate(session: Session, order_id: int, actor: Actor) -> Estimate:
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    return _require_estimate(session, order)


def auto_calculate_estimate(
    session: Session,
    order_id: int,
    request: EstimateCalcRequest,
    actor: Actor,
    calculator: Optional[EstimateCalculator] = None,
    now: Optional[datetime] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Estimate:
    ensure_staff(actor)
    order = get_order(session, order_id)
    ensure_open(order)

    calculator = calculator or get_calculator()
    stored = calc_profiles.find_active(session, request.profile)
    coeffs = calculator.resolve_profile(
        request.profile,
        calc_profiles.to_coefficients(stored) if stored is not None else None,
    )
    if coeffs is None:
        raise InvalidInputError(
            "UNKNOWN_PROFILE",
            f"Unknown pricing profile {request.profile!r}",
            {"known": calculator.builtin_profiles},
        )

    result = calculator.calculate(
        order.category,
        coeffs,
        flags=request.flags,
        discount_percent=request.discount_percent,
        summary=request.summary,
        comment=request.comment,
        package_name=request.package_name,
    )

    now = as_utc(now) or utcnow()
    estimate = find_estimate(session, order.id)
    if estimate is None:
        estimate = Estimate(order_id=order.id, created_at=now)
    estimate.parts_json = [p.model_dump() for p in result.parts]
    estimate.labor_json = [l.model_dump() for l in result.labor]
    estimate.meta = result.meta()
    estimate.total = result.total
    estimate.currency = DEFAULT_CURRENCY
    estimate.approved = False
    estimate.approved_at = None
    estimate.valid_until = now + timedelta(days=ESTIMATE_VALID_DAYS)
    estimate.updated_at = now
    session.add(estimate)
    session.flush()

    if order.status in (OrderStatus.NEW, OrderStatus.TRIAGE):
        advance(session, order, OrderStatus.QUOTE, "estimate_created", actor_id=actor.id)

    timeline.record(
        session,
        order.id,
        "Estimate auto-calculated",
        {
            "estimate_id": estimate.id,
            "profile": result.profile,
            "total": result.total,
            "discount_percent": result.discount_percent,
            "flags": result.flags.model_dump(),
        },
        actor_id=actor.id,
    )
    session.commit()
    session.refresh(estimate)
    logger.info(f"Estimate for order {order.id}: {result.total:.2f} {estimate.currency} ({result.profile})")

    (dispatcher or default_dispatcher()).broadcast(order.id, "estimate.calculated", total=estimate.total)
    return estimate


def approve_estimate(
    session: Session,
    order_id: int,
    actor: Actor,
    dispatcher: Optional[Dispatcher] = None,
) -> Estimate:
    """
    Idempotent. A second approval changes nothing on the estimate and only
    pulls the order up to APPROVED if it drifted behind.
    """
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    estimate = _require_estimate(session, order)
    ensure_open(order)

    if estimate.approved:
        if advance(session, order, OrderStatus.APPROVED, "estimate_approved", actor_id=actor.id):
            session.commit()
            session.refresh(estimate)
        return estimate

    estimate.approved = True
    estimate.approved_at = utcnow()
    estimate.updated_at = estimate.approved_at
    session.add(estimate)
    advance(session, order, OrderStatus.APPROVED, "estimate_approved", actor_id=actor.id)
    timeline.record(session, order.id, "Estimate approved", {"estimate_id": estimate.id, "total": estimate.total},
                    actor_id=actor.id)
    session.commit()
    session.refresh(estimate)
    logger.info(f"Estimate {estimate.id} approved for order {order.id}")

    (dispatcher or default_dispatcher()).broadcast(order.id, "estimate.approved", estimate_id=estimate.id)
    return estimate


def reject_estimate(
    session: Session,
    order_id: int,
    actor: Actor,
    reason: Optional[str] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Estimate:
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    estimate = _require_estimate(session, order)
    ensure_open(order)

    estimate.approved = False
    estimate.approved_at = None
    estimate.updated_at = utcnow()
    session.add(estimate)
    timeline.record(
        session,
        order.id,
        "Estimate rejected",
        {"estimate_id": estimate.id, "reason": (reason or "").strip() or "No reason provided"},
        actor_id=actor.id,
    )
    session.commit()
    session.refresh(estimate)

    (dispatcher or default_dispatcher()).broadcast(order.id, "estimate.rejected", estimate_id=estimate.id)
    return estimate


def lock_estimate(
    session: Session,
    order_id: int,
    actor: Actor,
    dispatcher: Optional[Dispatcher] = None,
) -> Estimate:
    """Staff sign-off: approve and tell the customer the price is fixed."""
    ensure_staff(actor)
    dispatcher = dispatcher or default_dispatcher()
    estimate = approve_estimate(session, order_id, actor, dispatcher=dispatcher)
    dispatcher.notify(NotificationType.ESTIMATE_LOCKED, order_id, estimate_id=estimate.id)
    return estimate
