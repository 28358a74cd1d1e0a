from datetime import datetime
from typing import Optional

from loguru import logger
from sqlmodel import Session, select

from backend.errors import InvalidInputError, NotFoundError, StateConflictError
from backend.models import LocationKind, OrderLocation, OrderStatus, TowPartner, TowRequest, TowStatus, as_utc, utcnow
from backend.schemas import Actor, DriverInfo
from backend.services import timeline
from backend.services.dispatch import Dispatcher, default_dispatcher
from backend.services.orders import advance, ensure_open, ensure_staff, ensure_staff_or_owner, get_order
from pricing.src.models import GeoPoint
from pricing.src.tow import InvalidRoute, TowCalculator

# Tow progress -> where the order should at least be.
TOW_TO_ORDER_STATUS = {
    TowStatus.ENROUTE: OrderStatus.SCHEDULED,
    TowStatus.ARRIVED: OrderStatus.INSERVICE,
    TowStatus.LOADING: OrderStatus.INSERVICE,
    TowStatus.INTRANSIT: OrderStatus.INSERVICE,
    TowStatus.DELIVERED: OrderStatus.READY,
    TowStatus.COMPLETED: OrderStatus.READY,
    TowStatus.CANCELLED: OrderStatus.QUOTE,
}
UPDATABLE_STATUSES = frozenset(TOW_TO_ORDER_STATUS)
FINAL_TOW_STATUSES = frozenset({TowStatus.COMPLETED, TowStatus.CANCELLED})

_calculator: Optional[TowCalculator] = None


def get_calculator() -> TowCalculator:
    global _calculator
    if _calculator is None:
        _calculator = TowCalculator()
    return _calculator


def find_tow(session: Session, order_id: int) -> Optional[TowRequest]:
    return session.exec(select(TowRequest).where(TowRequest.order_id == order_id)).first()


def _require_tow(session: Session, order_id: int) -> TowRequest:
    tow = find_tow(session, order_id)
    if tow is None:
        raise NotFoundError("TOW_REQUEST_NOT_FOUND", f"Order {order_id} has no tow request")
    return tow


def _order_route(session: Session, order_id: int) -> tuple[GeoPoint, GeoPoint]:
    points: dict[LocationKind, GeoPoint] = {}
    for loc in session.exec(select(OrderLocation).where(OrderLocation.order_id == order_id)).all():
        points.setdefault(loc.kind, GeoPoint(lat=loc.lat, lng=loc.lng))
    if LocationKind.pickup not in points or LocationKind.dropoff not in points:
        raise InvalidInputError("INVALID_ROUTE", "Order has no pickup/dropoff locations to quote from")
    return points[LocationKind.pickup], points[LocationKind.dropoff]


def quote_tow_for_order(
    session: Session,
    order_id: int,
    actor: Actor,
    origin: Optional[GeoPoint] = None,
    destination: Optional[GeoPoint] = None,
    now: Optional[datetime] = None,
    calculator: Optional[TowCalculator] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> TowRequest:
    """Quote and store the tow for an order. Re-quoting overwrites and resets to REQUESTED."""
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    ensure_open(order)

    if origin is None or destination is None:
        origin, destination = _order_route(session, order.id)

    # the night tariff reads the hour on the caller's clock
    now = now or utcnow()
    try:
        quote = (calculator or get_calculator()).quote(origin, destination, now)
    except InvalidRoute as e:
        raise InvalidInputError("INVALID_ROUTE", str(e))

    tow = find_tow(session, order.id)
    if tow is None:
        tow = TowRequest(order_id=order.id, distance_km=quote.distance_km, price=quote.price,
                         eta_minutes=quote.eta_minutes, created_at=as_utc(now))
    tow.distance_km = quote.distance_km
    tow.price = quote.price
    tow.eta_minutes = quote.eta_minutes
    tow.is_night = quote.is_night
    tow.status = TowStatus.REQUESTED
    tow.partner_id = None
    tow.driver_name = None
    tow.driver_phone = None
    tow.vehicle_info = None
    tow.updated_at = as_utc(now)
    session.add(tow)

    timeline.record(session, order.id, "Tow quoted", quote.model_dump(), actor_id=actor.id)
    session.commit()
    session.refresh(tow)
    logger.info(f"Tow quote for order {order.id}: {tow.distance_km} km, {tow.price:.0f}, eta {tow.eta_minutes} min")

    (dispatcher or default_dispatcher()).broadcast(order.id, "tow.quote", **quote.model_dump())
    return tow


def assign_tow(
    session: Session,
    order_id: int,
    partner_id: int,
    actor: Actor,
    driver: Optional[DriverInfo] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> TowRequest:
    ensure_staff(actor)
    order = get_order(session, order_id)
    ensure_open(order)
    partner = session.get(TowPartner, partner_id)
    if partner is None or not partner.active:
        raise NotFoundError("PARTNER_NOT_FOUND", f"Tow partner {partner_id} not found")
    tow = _require_tow(session, order.id)
    if tow.status in FINAL_TOW_STATUSES:
        raise StateConflictError("INVALID_STATE", f"Tow for order {order.id} is {tow.status.value}")

    tow.status = TowStatus.ASSIGNED
    tow.partner_id = partner.id
    if driver is not None:
        tow.driver_name = driver.name
        tow.driver_phone = driver.phone
        tow.vehicle_info = driver.vehicle
    tow.updated_at = utcnow()
    session.add(tow)

    advance(session, order, OrderStatus.SCHEDULED, "tow_assigned", actor_id=actor.id)
    timeline.record(session, order.id, "Tow assigned", {"partner_id": partner.id, "driver": tow.driver_name},
                    actor_id=actor.id)
    session.commit()
    session.refresh(tow)
    logger.info(f"Tow for order {order.id} assigned to partner {partner.name}")

    (dispatcher or default_dispatcher()).broadcast(order.id, "tow.assigned", partner_id=partner.id,
                                                   driver=tow.driver_name)
    return tow


def update_tow_status(
    session: Session,
    order_id: int,
    status: TowStatus,
    actor: Actor,
    dispatcher: Optional[Dispatcher] = None,
) -> TowRequest:
    ensure_staff(actor)
    if status not in UPDATABLE_STATUSES:
        raise InvalidInputError("INVALID_STATUS", f"Tow status {status.value} cannot be set directly")
    order = get_order(session, order_id)
    tow = _require_tow(session, order.id)
    if tow.status in FINAL_TOW_STATUSES:
        raise StateConflictError("INVALID_STATE", f"Tow for order {order.id} is already {tow.status.value}")

    tow.status = status
    tow.updated_at = utcnow()
    session.add(tow)

    advance(session, order, TOW_TO_ORDER_STATUS[status], f"tow_{status.value.lower()}", actor_id=actor.id)
    timeline.record(session, order.id, f"Tow status changed to {status.value}", {"status": status.value},
                    actor_id=actor.id)
    session.commit()
    session.refresh(tow)

    (dispatcher or default_dispatcher()).broadcast(order.id, "tow.status", status=status.value,
                                                   order_status=order.status.value)
    return tow


def get_tow_status(session: Session, order_id: int, actor: Actor) -> TowRequest:
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    return _require_tow(session, order.id)
