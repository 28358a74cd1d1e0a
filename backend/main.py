import hmac
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Form, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from sqlmodel import Session

from backend.database import engine, get_session, init_db
from backend.errors import DomainError, ForbiddenError, InvalidInputError
from backend.models import Estimate, utcnow
from backend.schemas import (
    Actor,
    CalcProfileCreate,
    CalcProfileUpdate,
    CompletionEvidence,
    EstimateCalcRequest,
    InvoiceRequest,
    OrderCreate,
    ProviderEvent,
    RejectRequest,
    Role,
    TowAssignRequest,
    TowQuoteRequest,
    TowStatusRequest,
    TransitionRequest,
    Web3VerifyRequest,
)
from backend.services import calc_profiles, estimates, insurance, orders, payments, tow, web3payments
from backend.services.chain import ChainClient, JsonRpcClient
from backend.services.dispatch import Dispatcher, InMemoryBroadcaster, InMemoryQueue
from backend.services.liqpay import LiqPayGateway
from backend.services.receipts import LocalReceiptStorage
from pricing.config import settings
from pricing.src.tow import InvalidRoute, calculate_tow_quote


def configure_logging() -> None:
    settings.ensure_dirs()
    logger.add(settings.LOG_DIR / "autoassist.log", rotation="10 MB", retention=5, level=settings.LOG_LEVEL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db(engine)
    logger.info("AutoAssist core started")
    yield


app = FastAPI(title="AutoAssist Core", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_dispatcher = Dispatcher(
    broadcaster=InMemoryBroadcaster(),
    queue=InMemoryQueue(),
    storage=LocalReceiptStorage(),
    engine=engine,
)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


# ─── Dependencies ───

def get_actor(
    x_actor_id: int = Header(...),
    x_actor_role: Role = Header(...),
    x_client_id: Optional[int] = Header(None),
) -> Actor:
    return Actor(id=x_actor_id, role=x_actor_role, client_id=x_client_id)


def get_base_dispatcher() -> Dispatcher:
    return _dispatcher


def get_dispatcher(
    background_tasks: BackgroundTasks,
    base: Dispatcher = Depends(get_base_dispatcher),
) -> Dispatcher:
    return base.with_runner(background_tasks.add_task)


def get_gateway() -> LiqPayGateway:
    return LiqPayGateway()


def get_chain_client() -> ChainClient:
    return JsonRpcClient()


def estimate_out(estimate: Estimate) -> dict:
    data = estimate.model_dump(exclude={"parts_json", "labor_json"})
    data["parts"] = [p.model_dump() for p in estimate.parts]
    data["labor"] = [l.model_dump() for l in estimate.labor]
    return data


# ─── Orders ───

@app.post("/orders", status_code=201)
def create_order(
    body: OrderCreate,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return orders.create_order(session, body, actor, dispatcher=dispatcher)


@app.get("/orders/{order_id}")
def get_order(order_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    order = orders.get_order(session, order_id)
    orders.ensure_staff_or_owner(actor, order)
    return order


@app.post("/orders/{order_id}/transition")
def transition_order(
    order_id: int,
    body: TransitionRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return orders.transition(session, order_id, body.status, actor, body.reason, dispatcher=dispatcher)


@app.post("/orders/{order_id}/complete")
def complete_order(
    order_id: int,
    body: CompletionEvidence,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    order, proof_hash = orders.complete_order(session, order_id, actor, body, dispatcher=dispatcher)
    return {"order": order, "proof_hash": proof_hash}


@app.get("/orders/{order_id}/proof")
def order_proof(order_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    return orders.get_order_proof(session, order_id, actor)


@app.get("/orders/{order_id}/timeline")
def order_timeline(order_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    return orders.get_timeline(session, order_id, actor)


# ─── Estimates ───

@app.post("/orders/{order_id}/estimate/auto")
def auto_estimate(
    order_id: int,
    body: EstimateCalcRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return estimate_out(estimates.auto_calculate_estimate(session, order_id, body, actor, dispatcher=dispatcher))


@app.get("/orders/{order_id}/estimate")
def get_estimate(order_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    return estimate_out(estimates.get_estimate(session, order_id, actor))


@app.post("/orders/{order_id}/estimate/approve")
def approve_estimate(
    order_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return estimate_out(estimates.approve_estimate(session, order_id, actor, dispatcher=dispatcher))


@app.post("/orders/{order_id}/estimate/reject")
def reject_estimate(
    order_id: int,
    body: RejectRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return estimate_out(estimates.reject_estimate(session, order_id, actor, body.reason, dispatcher=dispatcher))


@app.post("/orders/{order_id}/estimate/lock")
def lock_estimate(
    order_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return estimate_out(estimates.lock_estimate(session, order_id, actor, dispatcher=dispatcher))


@app.get("/calc-profiles")
def list_calc_profiles(
    include_inactive: bool = Query(False),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    return calc_profiles.list_profiles(session, include_inactive=include_inactive and actor.is_staff)


@app.post("/calc-profiles", status_code=201)
def create_calc_profile(
    body: CalcProfileCreate,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    return calc_profiles.create_profile(session, body, actor)


@app.patch("/calc-profiles/{profile_id}")
def update_calc_profile(
    profile_id: int,
    body: CalcProfileUpdate,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    return calc_profiles.update_profile(session, profile_id, body, actor)


@app.delete("/calc-profiles/{profile_id}")
def deactivate_calc_profile(
    profile_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    return calc_profiles.deactivate_profile(session, profile_id, actor)


# ─── Tow ───

@app.post("/tow/quote")
def tow_quote(body: TowQuoteRequest, at: Optional[datetime] = Query(None)):
    """Price check without an order. ``at`` defaults to the current UTC time."""
    if body.origin is None or body.destination is None:
        raise InvalidInputError("INVALID_ROUTE", "Both from and to are required")
    try:
        return calculate_tow_quote(body.origin, body.destination, at or utcnow())
    except InvalidRoute as e:
        raise InvalidInputError("INVALID_ROUTE", str(e))


@app.post("/orders/{order_id}/tow/quote")
def quote_tow(
    order_id: int,
    body: TowQuoteRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return tow.quote_tow_for_order(session, order_id, actor, body.origin, body.destination, dispatcher=dispatcher)


@app.post("/orders/{order_id}/tow/assign")
def assign_tow(
    order_id: int,
    body: TowAssignRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return tow.assign_tow(session, order_id, body.partner_id, actor, body.driver, dispatcher=dispatcher)


@app.post("/orders/{order_id}/tow/status")
def update_tow_status(
    order_id: int,
    body: TowStatusRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return tow.update_tow_status(session, order_id, body.status, actor, dispatcher=dispatcher)


@app.get("/orders/{order_id}/tow")
def get_tow(order_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    return tow.get_tow_status(session, order_id, actor)


# ─── Insurance ───

@app.post("/orders/{order_id}/insurance/offers")
def generate_offers(
    order_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return insurance.generate_offers(session, order_id, actor, dispatcher=dispatcher)


@app.post("/insurance/offers/{offer_id}/accept")
def accept_offer(
    offer_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return insurance.accept_offer(session, offer_id, actor, dispatcher=dispatcher)


# ─── Payments ───

@app.post("/orders/{order_id}/payments/invoice")
def create_invoice(
    order_id: int,
    body: InvoiceRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    gateway: LiqPayGateway = Depends(get_gateway),
):
    return payments.create_invoice(session, order_id, body, actor, gateway=gateway)


@app.get("/orders/{order_id}/payments")
def list_payments(order_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    return payments.list_payments(session, order_id, actor)


@app.post("/payments/webhook")
def payment_webhook(
    event: ProviderEvent,
    x_webhook_secret: Optional[str] = Header(None),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    if not settings.WEBHOOK_SECRET:
        if not settings.ALLOW_UNSIGNED_WEBHOOKS:
            raise ForbiddenError("WEBHOOK_NOT_CONFIGURED", "WEBHOOK_SECRET is not set")
    elif not hmac.compare_digest(x_webhook_secret or "", settings.WEBHOOK_SECRET):
        raise ForbiddenError("INVALID_SIGNATURE", "Webhook secret mismatch")
    return payments.handle_webhook_event(session, event, dispatcher=dispatcher)


@app.post("/payments/liqpay/callback")
def liqpay_callback(
    data: str = Form(...),
    signature: str = Form(...),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    gateway: LiqPayGateway = Depends(get_gateway),
):
    """LiqPay server callback, posted as a form with ``data`` and ``signature``."""
    event = payments.parse_liqpay_callback(data, signature, gateway=gateway)
    if event is None:
        return {"ignored": True}
    return payments.handle_webhook_event(session, event, dispatcher=dispatcher)


@app.post("/orders/{order_id}/payments/web3/verify")
def verify_web3_payment(
    order_id: int,
    body: Web3VerifyRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
    client: ChainClient = Depends(get_chain_client),
):
    return web3payments.verify_and_complete_web3_payment(
        session, order_id, body.payment_id, body.tx_hash, actor, client=client, dispatcher=dispatcher
    )


@app.post("/orders/{order_id}/payments/{payment_id}/mark-paid")
def mark_paid(
    order_id: int,
    payment_id: int,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    return payments.mark_paid(session, order_id, payment_id, actor, dispatcher=dispatcher)
