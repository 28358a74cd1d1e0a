from datetime import datetime
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from backend.database import init_db, make_engine
from backend.models import Client, TowPartner, Vehicle
from backend.schemas import Actor, OrderCreate, Role
from backend.services import orders
from backend.services.dispatch import Dispatcher, InMemoryBroadcaster, InMemoryQueue
from backend.services.liqpay import Checkout, LiqPayGateway
from backend.services.receipts import LocalReceiptStorage
from pricing.src.models import GeoPoint

KYIV_CENTER = GeoPoint(lat=50.4501, lng=30.5234)
KYIV_LEFT_BANK = GeoPoint(lat=50.4101, lng=30.6204)
LIQPAY_PUBLIC = "sandbox_public"
LIQPAY_PRIVATE = "sandbox_private"


class FakeGateway(LiqPayGateway):
    """Real signing with sandbox keys; checkout never leaves the process."""

    def __init__(self, fail: bool = False):
        super().__init__(public_key=LIQPAY_PUBLIC, private_key=LIQPAY_PRIVATE,
                         result_url="https://app.test/done", server_url="https://api.test/callback")
        self.fail = fail
        self.calls: list[dict] = []

    def create_checkout(self, amount: float, currency: str, description: str, provider_ref: str) -> Checkout:
        self.calls.append({"amount": amount, "currency": currency, "provider_ref": provider_ref})
        if self.fail:
            raise ConnectionError("liqpay down")
        return Checkout(url=f"https://pay.test/checkout/{provider_ref}", provider_ref=provider_ref)


class FakeChainClient:
    def __init__(self, chain_id: int = 80002, head: int = 100):
        self._chain_id = chain_id
        self.head = head
        self.receipts: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}

    def chain_id(self) -> int:
        return self._chain_id

    def block_number(self) -> int:
        return self.head

    def get_receipt(self, tx_hash: str) -> Optional[dict]:
        return self.receipts.get(tx_hash.lower())

    def get_transaction(self, tx_hash: str) -> Optional[dict]:
        return self.transactions.get(tx_hash.lower())


# ─── Database ───

@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'autoassist-test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


# ─── Side effects ───

@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def queue():
    return InMemoryQueue()


@pytest.fixture
def storage(tmp_path):
    return LocalReceiptStorage(tmp_path / "receipts")


@pytest.fixture
def dispatcher(broadcaster, queue, storage, engine):
    return Dispatcher(broadcaster=broadcaster, queue=queue, storage=storage, engine=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def failing_gateway():
    return FakeGateway(fail=True)


@pytest.fixture
def chain():
    return FakeChainClient()


# ─── Actors and data ───

@pytest.fixture
def staff():
    return Actor(id=1, role=Role.service_manager)


@pytest.fixture
def mechanic():
    return Actor(id=2, role=Role.mechanic)


@pytest.fixture
def client(session):
    c = Client(name="Olena Koval", phone="+380501234567")
    session.add(c)
    session.commit()
    session.refresh(c)
    return c


@pytest.fixture
def vehicle(session, client):
    v = Vehicle(client_id=client.id, plate="AA1234BB", make="Skoda", model="Octavia", year=2015, mileage=120000)
    session.add(v)
    session.commit()
    session.refresh(v)
    return v


@pytest.fixture
def owner(client):
    return Actor(id=10, role=Role.customer, client_id=client.id)


@pytest.fixture
def stranger():
    return Actor(id=11, role=Role.customer, client_id=999)


@pytest.fixture
def partner(session):
    p = TowPartner(name="Kyiv Evacuator 24/7", phone="+380441112233")
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


@pytest.fixture
def make_order(session, vehicle, staff, dispatcher):
    def _make(category: str = "engine", description: Optional[str] = None, with_route: bool = True, **kwargs):
        data = OrderCreate(
            client_id=vehicle.client_id,
            vehicle_id=vehicle.id,
            category=category,
            description=description,
            pickup=KYIV_CENTER if with_route else None,
            dropoff=KYIV_LEFT_BANK if with_route else None,
            **kwargs,
        )
        return orders.create_order(session, data, staff, dispatcher=dispatcher)

    return _make


@pytest.fixture
def order(make_order):
    return make_order()


@pytest.fixture
def day_time():
    return datetime(2025, 3, 10, 14, 0)


# ─── HTTP ───

@pytest.fixture
def api(engine, dispatcher, gateway, chain):
    from backend import main

    def override_session():
        with Session(engine) as s:
            yield s

    main.app.dependency_overrides[main.get_session] = override_session
    main.app.dependency_overrides[main.get_base_dispatcher] = lambda: dispatcher
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_chain_client] = lambda: chain
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """HTTP headers the API reads the caller from."""

    def _headers(actor: Actor) -> dict:
        h = {"X-Actor-Id": str(actor.id), "X-Actor-Role": actor.role.value}
        if actor.client_id is not None:
            h["X-Client-Id"] = str(actor.client_id)
        return h

    return _headers
