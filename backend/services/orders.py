"""
Order lifecycle.

    NEW -> TRIAGE -> QUOTE -> APPROVED -> SCHEDULED -> INSERVICE -> READY -> DELIVERED -> CLOSED
                                     (any non-terminal) -> CANCELLED

One table answers "may this kind of actor move an order from X to Y".
Staff may skip ahead; the owning customer gets a handful of moves
(cancel early, accept or decline a quote, confirm delivery). Automated
triggers (payments, estimates, tow updates) go through ``advance``, which
only ever moves an order forward.
"""

import hashlib
import json
from enum import Enum
from typing import Optional

from loguru import logger
from sqlmodel import Session

from backend.errors import ForbiddenError, NotFoundError, StateConflictError
from backend.models import Client, Order, OrderLocation, OrderStatus, LocationKind, Vehicle, utcnow
from backend.schemas import Actor, CompletionEvidence, OrderCreate, OrderProof
from backend.services import timeline
from backend.services.dispatch import Dispatcher, NotificationType, default_dispatcher

FLOW = [
    OrderStatus.NEW,
    OrderStatus.TRIAGE,
    OrderStatus.QUOTE,
    OrderStatus.APPROVED,
    OrderStatus.SCHEDULED,
    OrderStatus.INSERVICE,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
    OrderStatus.CLOSED,
]
TERMINAL = frozenset({OrderStatus.CLOSED, OrderStatus.CANCELLED})


class ActorKind(str, Enum):
    STAFF = "STAFF"
    OWNER = "OWNER"


def _build_table() -> dict[tuple[OrderStatus, ActorKind], frozenset[OrderStatus]]:
    table: dict[tuple[OrderStatus, ActorKind], frozenset[OrderStatus]] = {}
    for i, status in enumerate(FLOW):
        if status in TERMINAL:
            continue
        table[(status, ActorKind.STAFF)] = frozenset(FLOW[i + 1:]) | {OrderStatus.CANCELLED}
    table[(OrderStatus.NEW, ActorKind.OWNER)] = frozenset({OrderStatus.CANCELLED})
    table[(OrderStatus.QUOTE, ActorKind.OWNER)] = frozenset({OrderStatus.APPROVED, OrderStatus.CANCELLED})
    table[(OrderStatus.READY, ActorKind.OWNER)] = frozenset({OrderStatus.DELIVERED})
    return table


ALLOWED_TRANSITIONS = _build_table()


def allowed_targets(status: OrderStatus, kind: Optional[ActorKind]) -> frozenset[OrderStatus]:
    if kind is None:
        return frozenset()
    return ALLOWED_TRANSITIONS.get((status, kind), frozenset())


def rank(status: OrderStatus) -> int:
    """Position in the forward flow. CANCELLED sorts after everything."""
    if status == OrderStatus.CANCELLED:
        return len(FLOW)
    return FLOW.index(status)


def actor_kind(actor: Actor, order: Order) -> Optional[ActorKind]:
    if actor.is_staff:
        return ActorKind.STAFF
    if actor.owns(order.client_id):
        return ActorKind.OWNER
    return None


def get_order(session: Session, order_id: int) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFoundError("ORDER_NOT_FOUND", f"Order {order_id} not found")
    return order


def ensure_staff_or_owner(actor: Actor, order: Order) -> ActorKind:
    kind = actor_kind(actor, order)
    if kind is None:
        raise ForbiddenError(details={"order_id": order.id, "role": actor.role.value})
    return kind


def ensure_staff(actor: Actor) -> None:
    if not actor.is_staff:
        raise ForbiddenError(details={"role": actor.role.value})


def ensure_open(order: Order) -> None:
    if order.status in TERMINAL:
        raise StateConflictError("INVALID_STATE", f"Order {order.id} is {order.status.value}")


def _set_status(
    session: Session,
    order: Order,
    target: OrderStatus,
    reason: Optional[str],
    actor_id: Optional[int] = None,
) -> None:
    previous = order.status
    order.status = target
    order.updated_at = utcnow()
    session.add(order)
    timeline.record(
        session,
        order.id,
        f"Status changed to {target.value}",
        {"status": target.value, "from": previous.value, "reason": reason},
        actor_id=actor_id,
    )


def check_transition(order: Order, target: OrderStatus, actor: Actor) -> None:
    kind = actor_kind(actor, order)
    if kind is None:
        raise ForbiddenError(details={"order_id": order.id, "role": actor.role.value})
    if target in allowed_targets(order.status, kind):
        return
    if target in allowed_targets(order.status, ActorKind.STAFF):
        raise ForbiddenError(details={"from": order.status.value, "to": target.value})
    raise StateConflictError(
        "INVALID_TRANSITION",
        f"Cannot move order from {order.status.value} to {target.value}",
        {"from": order.status.value, "to": target.value},
    )


def transition(
    session: Session,
    order_id: int,
    target: OrderStatus,
    actor: Actor,
    reason: Optional[str] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> Order:
    """Explicit status change requested by a person."""
    order = get_order(session, order_id)
    check_transition(order, target, actor)
    previous = order.status
    _set_status(session, order, target, reason, actor_id=actor.id)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.id}: {previous.value} -> {target.value} by {actor.role.value} #{actor.id}")
    (dispatcher or default_dispatcher()).broadcast(order.id, "status.changed", status=target.value)
    return order


def advance(
    session: Session,
    order: Order,
    target: OrderStatus,
    reason: str,
    actor_id: Optional[int] = None,
) -> bool:
    """
    Move forward to ``target`` on behalf of the system.

    No-op (returns False) when the order is terminal or already at or past
    the target. Does not commit.
    """
    if order.status in TERMINAL:
        return False
    if rank(order.status) >= rank(target):
        return False
    if target not in allowed_targets(order.status, ActorKind.STAFF):
        return False
    _set_status(session, order, target, reason, actor_id=actor_id)
    return True


def create_order(
    session: Session,
    data: OrderCreate,
    actor: Actor,
    dispatcher: Optional[Dispatcher] = None,
) -> Order:
    client = session.get(Client, data.client_id)
    if client is None:
        raise NotFoundError("CLIENT_NOT_FOUND", f"Client {data.client_id} not found")
    if not actor.is_staff and not actor.owns(client.id):
        raise ForbiddenError(details={"client_id": client.id})
    vehicle = session.get(Vehicle, data.vehicle_id)
    if vehicle is None:
        raise NotFoundError("VEHICLE_NOT_FOUND", f"Vehicle {data.vehicle_id} not found")
    if vehicle.client_id != client.id:
        raise ForbiddenError("FORBIDDEN", "Vehicle belongs to another client")

    order = Order(
        client_id=client.id,
        vehicle_id=vehicle.id,
        category=data.category.value,
        description=data.description,
        channel=data.channel,
        priority=data.priority,
    )
    session.add(order)
    session.flush()

    for kind, point in ((LocationKind.pickup, data.pickup), (LocationKind.dropoff, data.dropoff)):
        if point is not None:
            session.add(OrderLocation(order_id=order.id, kind=kind, lat=point.lat, lng=point.lng))

    timeline.record(session, order.id, "Order created", {"category": order.category, "channel": order.channel},
                    actor_id=actor.id)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.id} created for client {client.id} ({order.category})")
    (dispatcher or default_dispatcher()).broadcast(order.id, "order.created", status=order.status.value)
    return order


def _canonical_json(payload: dict) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def complete_order(
    session: Session,
    order_id: int,
    actor: Actor,
    evidence: Optional[CompletionEvidence] = None,
    dispatcher: Optional[Dispatcher] = None,
) -> tuple[Order, str]:
    """Close the order and pin a hash of the completion evidence in the timeline."""
    ensure_staff(actor)
    order = get_order(session, order_id)
    check_transition(order, OrderStatus.CLOSED, actor)

    evidence = evidence or CompletionEvidence()
    payload = {
        "order_id": order.id,
        "completed_at": (evidence.completed_at or utcnow()).isoformat(),
        "coords": evidence.coords.model_dump() if evidence.coords else None,
        "photos": sorted(evidence.photos),
        "notes": evidence.notes,
    }
    proof_hash = hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()

    _set_status(session, order, OrderStatus.CLOSED, "order_completed", actor_id=actor.id)
    timeline.record(session, order.id, "Order completed", {"proof_hash": proof_hash, "evidence": payload},
                    actor_id=actor.id)
    session.commit()
    session.refresh(order)
    logger.info(f"Order {order.id} completed, proof {proof_hash[:12]}")

    dispatcher = dispatcher or default_dispatcher()
    dispatcher.broadcast(order.id, "order.completed", proof_hash=proof_hash)
    dispatcher.notify(NotificationType.ORDER_CLOSED, order.id)
    return order, proof_hash


def get_order_proof(session: Session, order_id: int, actor: Actor) -> OrderProof:
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    entry = timeline.latest(session, order.id, "Order completed")
    if entry is None or not entry.details.get("proof_hash"):
        raise NotFoundError("PROOF_NOT_FOUND", f"Order {order.id} has no completion proof")
    return OrderProof(
        order_id=order.id,
        proof_hash=entry.details["proof_hash"],
        evidence=entry.details.get("evidence") or {},
        created_at=entry.created_at,
    )


def get_timeline(session: Session, order_id: int, actor: Actor):
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    return timeline.list_for_order(session, order.id)

