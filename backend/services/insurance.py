from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlalchemy import func
from sqlmodel import Session, select

from backend.errors import NotFoundError, StateConflictError
from backend.models import InsuranceOffer, OfferStatus, Order, Vehicle, as_utc, utcnow
from backend.schemas import Actor
from backend.services import timeline
from backend.services.dispatch import Dispatcher, default_dispatcher
from backend.services.orders import ensure_open, ensure_staff_or_owner, get_order
from pricing.config.settings import OFFER_VALID_DAYS
from pricing.src.insurance_rules import OfferRules
from pricing.src.models import OfferContext


def list_offers(session: Session, order_id: int) -> list[InsuranceOffer]:
    statement = select(InsuranceOffer).where(InsuranceOffer.order_id == order_id).order_by(InsuranceOffer.id)
    return list(session.exec(statement).all())


def count_repeat_issues(session: Session, order: Order) -> int:
    """Other orders for the same vehicle in the same category."""
    statement = select(func.count()).select_from(Order).where(
        Order.vehicle_id == order.vehicle_id,
        Order.category == order.category,
        Order.id != order.id,
    )
    return int(session.exec(statement).one())


def generate_offers(
    session: Session,
    order_id: int,
    actor: Actor,
    now: Optional[datetime] = None,
    rules: Optional[OfferRules] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> list[InsuranceOffer]:
    """Create the offers the rules suggest, skipping codes the order already has."""
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    ensure_open(order)
    vehicle = session.get(Vehicle, order.vehicle_id)

    now = as_utc(now) or utcnow()
    ctx = OfferContext(
        category=order.category,
        description=order.description,
        vehicle_year=vehicle.year if vehicle else None,
        mileage=vehicle.mileage if vehicle else None,
        repeat_issues=count_repeat_issues(session, order),
        today=now.date(),
    )
    suggested = (rules or OfferRules()).evaluate(ctx)

    existing = {o.code for o in list_offers(session, order.id)}
    created = 0
    for offer in suggested:
        if offer.code in existing:
            continue
        session.add(InsuranceOffer(
            order_id=order.id,
            code=offer.code,
            title=offer.title,
            price=offer.price,
            valid_until=now + timedelta(days=OFFER_VALID_DAYS),
            created_at=now,
        ))
        created += 1
    if created:
        session.commit()
        logger.info(f"Order {order.id}: {created} insurance offer(s) created")

    offers = list_offers(session, order.id)
    (dispatcher or default_dispatcher()).broadcast(order.id, "offers", codes=[o.code for o in offers])
    return offers


def accept_offer(
    session: Session,
    offer_id: int,
    actor: Actor,
    now: Optional[datetime] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> InsuranceOffer:
    offer = session.get(InsuranceOffer, offer_id)
    if offer is None:
        raise NotFoundError("OFFER_NOT_FOUND", f"Insurance offer {offer_id} not found")
    order = get_order(session, offer.order_id)
    ensure_staff_or_owner(actor, order)

    if offer.status == OfferStatus.ACCEPTED:
        return offer

    siblings = [o for o in list_offers(session, order.id) if o.id != offer.id]
    if any(o.status == OfferStatus.ACCEPTED for o in siblings):
        raise StateConflictError("OFFER_ALREADY_ACCEPTED", f"Order {order.id} already has an accepted offer")
    if offer.status == OfferStatus.DECLINED:
        raise StateConflictError("OFFER_NOT_AVAILABLE", f"Offer {offer.id} was declined")
    now = as_utc(now) or utcnow()
    if offer.valid_until is not None and offer.valid_until < now:
        raise StateConflictError("OFFER_EXPIRED", f"Offer {offer.id} expired at {offer.valid_until.isoformat()}")

    offer.status = OfferStatus.ACCEPTED
    offer.accepted_at = now
    session.add(offer)
    for sibling in siblings:
        if sibling.status == OfferStatus.OFFERED:
            sibling.status = OfferStatus.DECLINED
            session.add(sibling)
    timeline.record(session, order.id, "Insurance offer accepted",
                    {"offer_id": offer.id, "code": offer.code, "price": offer.price}, actor_id=actor.id)
    session.commit()
    session.refresh(offer)
    logger.info(f"Order {order.id}: insurance offer {offer.code} accepted")

    (dispatcher or default_dispatcher()).broadcast(order.id, "offer.accepted", offer_id=offer.id, code=offer.code)
    return offer
