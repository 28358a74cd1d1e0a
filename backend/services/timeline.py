"""Append-only audit trail per order. There is no update or delete."""

from typing import Optional

from sqlmodel import Session, select

from backend.models import OrderTimeline


def record(
    session: Session,
    order_id: int,
    event: str,
    details: Optional[dict] = None,
    actor_id: Optional[int] = None,
) -> OrderTimeline:
    """Add an entry to the caller's unit of work. The caller commits."""
    entry = OrderTimeline(order_id=order_id, event=event, details=dict(details or {}), actor_id=actor_id)
    session.add(entry)
    return entry


def list_for_order(session: Session, order_id: int) -> list[OrderTimeline]:
    statement = (
        select(OrderTimeline)
        .where(OrderTimeline.order_id == order_id)
        .order_by(OrderTimeline.created_at, OrderTimeline.id)
    )
    return list(session.exec(statement).all())


def latest(session: Session, order_id: int, event: str) -> Optional[OrderTimeline]:
    statement = (
        select(OrderTimeline)
        .where(OrderTimeline.order_id == order_id, OrderTimeline.event == event)
        .order_by(OrderTimeline.created_at.desc(), OrderTimeline.id.desc())
    )
    return session.exec(statement).first()


def count(session: Session, order_id: int, event: str) -> int:
    return len([e for e in list_for_order(session, order_id) if e.event == event])
