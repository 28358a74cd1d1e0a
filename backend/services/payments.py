"""
Invoices and payment reconciliation.

Invoices are idempotent twice over: an explicit idempotency key, and a
fingerprint of (order, amount, currency, purpose) that reuses a PENDING
invoice created inside the replay window. The PENDING row is committed
before the checkout call, and a partial unique index keeps one live PENDING
invoice per fingerprint.

Provider webhooks are applied exactly once. The event id is inserted into
``webhook_events`` first; a duplicate delivery hits the primary key and is
reported as a replay with no further effects. Completion, timeline entry
and the handled flag are written in the same transaction as that insert.
"""

import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from backend.errors import DomainError, InvalidInputError, NotFoundError, UpstreamError
from backend.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    WebhookEvent,
    as_utc,
    utcnow,
)
from backend.schemas import Actor, EventKind, InvoiceRequest, InvoiceResult, ProviderEvent, WebhookResult
from backend.services import timeline
from backend.services.dispatch import Dispatcher, NotificationType, default_dispatcher
from backend.services.liqpay import CheckoutGateway, LiqPayGateway, decode_data
from backend.services.orders import advance, ensure_open, ensure_staff, ensure_staff_or_owner, get_order
from pricing.config.settings import INVOICE_REPLAY_WINDOW_MINUTES
from pricing.src.money import round2

SUPPORTED_PROVIDERS = {PaymentProvider.LIQPAY, PaymentProvider.WEB3}

LIQPAY_SUCCESS = {"success", "sandbox"}
LIQPAY_FAILURE = {"failure", "error", "reversed"}


def fingerprint(order_id: int, amount: float, currency: str, purpose: str) -> str:
    raw = f"{order_id}:{amount:.2f}:{currency.upper()}:{purpose}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def new_provider_ref(order_id: int) -> str:
    return f"aa-{order_id}-{uuid.uuid4().hex[:12]}"


def replay_window() -> timedelta:
    return timedelta(minutes=INVOICE_REPLAY_WINDOW_MINUTES)


def _find_by_idempotency_key(session: Session, order_id: int, key: str) -> Optional[Payment]:
    statement = select(Payment).where(Payment.order_id == order_id, Payment.idempotency_key == key)
    return session.exec(statement).first()


def _find_recent_pending(session: Session, order_id: int, fp: str, since: datetime) -> Optional[Payment]:
    statement = (
        select(Payment)
        .where(
            Payment.order_id == order_id,
            Payment.fingerprint == fp,
            Payment.status == PaymentStatus.PENDING,
            Payment.created_at >= since,
        )
        .order_by(Payment.created_at.desc())
    )
    return session.exec(statement).first()


def _find_pending(session: Session, fp: str) -> Optional[Payment]:
    statement = select(Payment).where(Payment.fingerprint == fp, Payment.status == PaymentStatus.PENDING)
    return session.exec(statement).first()


def _supersede_stale(session: Session, fp: str, since: datetime) -> None:
    """PENDING invoices older than the replay window give up the fingerprint to a new one."""
    statement = select(Payment).where(
        Payment.fingerprint == fp,
        Payment.status == PaymentStatus.PENDING,
        Payment.created_at < since,
    )
    for stale in session.exec(statement).all():
        stale.status = PaymentStatus.CANCELED
        session.add(stale)
        timeline.record(session, stale.order_id, "Payment invoice superseded", {"payment_id": stale.id})
        logger.info(f"Invoice {stale.id} superseded after the replay window")
    session.flush()


def _release_claim(session: Session, payment: Payment) -> None:
    """No checkout was opened; FAILED frees the fingerprint for a retry."""
    payment.status = PaymentStatus.FAILED
    session.add(payment)
    session.commit()


def create_invoice(
    session: Session,
    order_id: int,
    request: InvoiceRequest,
    actor: Actor,
    gateway: Optional[CheckoutGateway] = None,
    now: Optional[datetime] = None,
) -> InvoiceResult:
    """
    The PENDING row is committed before the provider is called, so a second
    request for the same fingerprint either sees it or loses the insert on
    the partial unique index, and reuses it either way.
    """
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    ensure_open(order)
    if request.amount is None or request.amount <= 0:
        raise InvalidInputError("INVALID_AMOUNT", "Amount must be positive")
    if request.provider not in SUPPORTED_PROVIDERS:
        raise InvalidInputError("PROVIDER_NOT_SUPPORTED", f"Provider {request.provider.value} is not supported")

    now = as_utc(now) or utcnow()
    amount = round2(request.amount)
    currency = request.currency.upper()
    order_id = order.id

    if request.idempotency_key:
        existing = _find_by_idempotency_key(session, order_id, request.idempotency_key)
        if existing is not None:
            logger.info(f"Invoice for order {order_id} reused by idempotency key (payment {existing.id})")
            return InvoiceResult(payment=existing, invoice_url=existing.invoice_url, reused=True)

    fp = fingerprint(order_id, amount, currency, request.purpose.value)
    since = now - replay_window()
    existing = _find_recent_pending(session, order_id, fp, since)
    if existing is not None:
        logger.info(f"Invoice for order {order_id} reused within replay window (payment {existing.id})")
        return InvoiceResult(payment=existing, invoice_url=existing.invoice_url, reused=True)

    description = request.description or f"Оплата замовлення #{order_id} у AutoAssist+"
    _supersede_stale(session, fp, since)
    payment = Payment(
        order_id=order_id,
        amount=amount,
        currency=currency,
        provider=request.provider,
        method=request.method,
        purpose=request.purpose,
        status=PaymentStatus.PENDING,
        provider_ref=new_provider_ref(order_id),
        fingerprint=fp,
        idempotency_key=request.idempotency_key,
        description=description,
        created_at=now,
    )
    session.add(payment)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        winner = _find_pending(session, fp)
        if winner is None:
            raise
        logger.info(f"Invoice for order {order_id} lost the insert race, reusing payment {winner.id}")
        return InvoiceResult(payment=winner, invoice_url=winner.invoice_url, reused=True)

    if payment.provider == PaymentProvider.LIQPAY:
        gateway = gateway or LiqPayGateway()
        try:
            checkout = gateway.create_checkout(amount, currency, description, payment.provider_ref)
        except DomainError:
            _release_claim(session, payment)
            raise
        except Exception as e:
            _release_claim(session, payment)
            logger.warning(f"Checkout creation failed for order {order_id}: {e}")
            raise UpstreamError("PROVIDER_UNAVAILABLE", "Payment provider is unavailable")
        payment.provider_ref, payment.invoice_url = checkout.provider_ref, checkout.url
        session.add(payment)
    # WEB3 invoices have no hosted page; the customer pays on-chain and submits the tx hash.

    timeline.record(
        session,
        order_id,
        "Payment invoice created",
        {
            "payment_id": payment.id,
            "amount": amount,
            "currency": currency,
            "purpose": request.purpose.value,
            "provider": request.provider.value,
        },
        actor_id=actor.id,
    )
    session.commit()
    session.refresh(payment)
    logger.info(f"Invoice {payment.id} created for order {order_id}: {amount:.2f} {currency}")
    return InvoiceResult(payment=payment, invoice_url=payment.invoice_url, reused=False)


def complete_payment(
    session: Session,
    payment: Payment,
    event: str = "Payment completed",
    details: Optional[dict] = None,
    actor_id: Optional[int] = None,
) -> bool:
    """
    Mark a payment COMPLETED and pull its order up to APPROVED.
    Returns False when the payment was already completed. Does not commit.
    """
    if payment.status == PaymentStatus.COMPLETED:
        return False
    payment.status = PaymentStatus.COMPLETED
    payment.completed_at = utcnow()
    session.add(payment)

    order = session.get(Order, payment.order_id)
    if order is not None:
        advance(session, order, OrderStatus.APPROVED, "payment_completed", actor_id=actor_id)

    timeline.record(
        session,
        payment.order_id,
        event,
        {
            "payment_id": payment.id,
            "amount": payment.amount,
            "currency": payment.currency,
            "purpose": payment.purpose.value,
            "provider": payment.provider.value,
            **(details or {}),
        },
        actor_id=actor_id,
    )
    return True


def after_completion(dispatcher: Dispatcher, payment: Payment) -> None:
    dispatcher.broadcast(payment.order_id, "payment:status", payment_id=payment.id, status=payment.status.value)
    dispatcher.generate_receipt(payment.id)
    dispatcher.notify(NotificationType.PAYMENT_COMPLETED, payment.order_id, payment_id=payment.id)


def _find_payment_for_event(session: Session, event: ProviderEvent) -> Optional[Payment]:
    if event.payment_id is not None:
        payment = session.get(Payment, event.payment_id)
        if payment is not None and (event.order_id is None or payment.order_id == event.order_id):
            return payment
        return None
    if event.provider_ref:
        return session.exec(select(Payment).where(Payment.provider_ref == event.provider_ref)).first()
    if event.order_id is not None:
        statement = (
            select(Payment)
            .where(Payment.order_id == event.order_id, Payment.status == PaymentStatus.PENDING)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        return session.exec(statement).first()
    return None


def handle_webhook_event(
    session: Session,
    event: ProviderEvent,
    dispatcher: Optional[Dispatcher] = None,
) -> WebhookResult:
    try:
        session.connection().execute(
            insert(WebhookEvent).values(
                id=event.event_id,
                provider=event.provider.value,
                type=event.kind.value,
                payload=event.payload,
                handled=False,
                received_at=utcnow(),
            )
        )
    except IntegrityError:
        session.rollback()
        logger.info(f"Webhook {event.event_id} already processed, skipping")
        return WebhookResult(replayed=True)

    payment = _find_payment_for_event(session, event)
    if payment is None:
        session.rollback()
        raise NotFoundError("PAYMENT_NOT_FOUND", f"No payment matches webhook {event.event_id}")

    if event.amount is not None and abs(round2(event.amount) - payment.amount) >= 0.01:
        logger.warning(f"Webhook {event.event_id} amount {event.amount} differs from payment {payment.id} ({payment.amount})")

    completed = False
    if event.kind.is_success:
        completed = complete_payment(session, payment, "Payment completed",
                                     {"event_id": event.event_id, "provider_ref": payment.provider_ref})
    elif payment.status == PaymentStatus.PENDING:
        payment.status = PaymentStatus.FAILED
        session.add(payment)
        timeline.record(session, payment.order_id, "Payment failed",
                        {"payment_id": payment.id, "event_id": event.event_id})

    session.connection().execute(
        update(WebhookEvent).where(WebhookEvent.id == event.event_id).values(handled=True)
    )
    session.commit()
    session.refresh(payment)
    logger.info(f"Webhook {event.event_id} ({event.kind.value}) applied to payment {payment.id}: {payment.status.value}")

    dispatcher = dispatcher or default_dispatcher()
    if completed:
        after_completion(dispatcher, payment)
    elif event.kind == EventKind.PAYMENT_FAILED:
        dispatcher.broadcast(payment.order_id, "payment:status", payment_id=payment.id, status=payment.status.value)
    return WebhookResult(replayed=False, payment_id=payment.id, order_id=payment.order_id, status=payment.status)


def parse_liqpay_callback(data: str, signature: str, gateway: Optional[LiqPayGateway] = None) -> Optional[ProviderEvent]:
    """
    Verify and normalize a LiqPay server callback.
    Returns None for intermediate statuses (processing, wait_secure, ...).
    """
    gateway = gateway or LiqPayGateway()
    if not gateway.verify(data, signature):
        raise InvalidInputError("INVALID_SIGNATURE", "LiqPay signature mismatch")
    try:
        payload = decode_data(data)
    except ValueError:
        raise InvalidInputError("INVALID_PAYLOAD", "LiqPay data is not valid base64 JSON")

    status = str(payload.get("status", "")).lower()
    if status in LIQPAY_SUCCESS:
        kind = EventKind.PAYMENT_SUCCEEDED
    elif status in LIQPAY_FAILURE:
        kind = EventKind.PAYMENT_FAILED
    else:
        logger.info(f"LiqPay callback with status {status!r} ignored")
        return None

    ref = payload.get("order_id")
    return ProviderEvent(
        event_id=f"liqpay:{payload.get('payment_id') or ref}:{status}",
        provider=PaymentProvider.LIQPAY,
        kind=kind,
        provider_ref=ref,
        amount=payload.get("amount"),
        payload=payload,
    )


def mark_paid(
    session: Session,
    order_id: int,
    payment_id: int,
    actor: Actor,
    dispatcher: Optional[Dispatcher] = None,
) -> Payment:
    """Manual completion (cash at the desk, bank transfer checked by staff)."""
    ensure_staff(actor)
    payment = session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("PAYMENT_NOT_FOUND", f"Payment {payment_id} not found")
    if payment.order_id != order_id:
        raise InvalidInputError("ORDER_MISMATCH", f"Payment {payment_id} does not belong to order {order_id}")

    completed = complete_payment(session, payment, "Payment completed", {"manual": True}, actor_id=actor.id)
    if completed:
        session.commit()
        session.refresh(payment)
        logger.info(f"Payment {payment.id} marked paid by #{actor.id}")
        after_completion(dispatcher or default_dispatcher(), payment)
    return payment


def list_payments(session: Session, order_id: int, actor: Actor) -> list[Payment]:
    order = get_order(session, order_id)
    ensure_staff_or_owner(actor, order)
    statement = select(Payment).where(Payment.order_id == order.id).order_by(Payment.created_at, Payment.id)
    return list(session.exec(statement).all())
