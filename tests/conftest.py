"""
Shared pytest fixtures for the card shop tests.

These fixtures provide a throwaway SQLite database per test, a seeded card
product, and fakes for every outside collaborator (transaction feed, payment
service, push service, SMTP server) so no test touches the network.
"""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import httpx
import pytest
from pydantic import SecretStr

from reconciliation.amounts import AmountDisambiguator
from reconciliation.dispatcher import NotificationDispatcher
from reconciliation.engine import OrderService
from reconciliation.payment_gateway import PaymentGatewayClient
from shared.channels import EmailChannel, NotificationChannels, PushChannel
from shared.config import ShopConfig
from shared.database import Database
from shared.inventory import InventoryLedger
from shared.models import Product, Transfer, to_epoch_ms, to_micros
from shared.order_store import OrderStore
from shared.settings_store import SettingsStore

WALLET_ADDRESS = "TXYZwalletAddressForTests000000001"
ADMIN_TOKEN = "admin-secret"
TEST_CODES = [f"test-code-{i}" for i in range(1, 6)]
FIXED_SUFFIX = 37


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Controllable replacement for utc_now()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeFeed:
    """Transaction feed returning whatever the test put in `transfers`."""

    def __init__(self):
        self.transfers: list[Transfer] = []
        self.calls = 0

    def fetch_recent(self) -> list[Transfer]:
        self.calls += 1
        return list(self.transfers)

    def add(self, amount: Decimal, at: datetime, tx_id: Optional[str] = None, to: Optional[str] = None) -> Transfer:
        transfer = Transfer(
            value_minor=to_micros(amount),
            timestamp_ms=to_epoch_ms(at),
            tx_id=tx_id or f"tx-{len(self.transfers) + 1}",
            to_address=to,
        )
        self.transfers.append(transfer)
        return transfer


class RecordingTransport:
    """httpx.MockTransport wrapper that keeps every request it answers."""

    def __init__(self, handler):
        self.requests: list[httpx.Request] = []
        self._handler = handler
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=self.transport)


class FakeSMTP:
    """Stands in for smtplib.SMTP / SMTP_SSL and records what was sent."""

    def __init__(self, host: str, port: int, implicit_tls: bool, starttls_offered: bool = True, fail: Optional[Exception] = None):
        self.host = host
        self.port = port
        self.implicit_tls = implicit_tls
        self.starttls_offered = starttls_offered
        self.fail = fail
        self.started_tls = False
        self.logged_in_as: Optional[str] = None
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        return (250, b"ok")

    def has_extn(self, name: str) -> bool:
        return name.lower() == "starttls" and self.starttls_offered

    def starttls(self):
        self.started_tls = True

    def login(self, user: str, password: str):
        if self.fail is not None:
            raise self.fail
        self.logged_in_as = user

    def send_message(self, message):
        self.sent.append(message)


class FakeSMTPFactory:
    def __init__(self, starttls_offered: bool = True, fail: Optional[Exception] = None):
        self.starttls_offered = starttls_offered
        self.fail = fail
        self.connections: list[FakeSMTP] = []

    def __call__(self, host: str, port: int, implicit_tls: bool, timeout: float) -> FakeSMTP:
        conn = FakeSMTP(host, port, implicit_tls, self.starttls_offered, self.fail)
        self.connections.append(conn)
        return conn

    @property
    def sent(self) -> list:
        return [m for c in self.connections for m in c.sent]


def payment_service_ok(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={
        "status_code": 200,
        "message": "success",
        "data": {
            "token": WALLET_ADDRESS,
            "payment_url": f"https://pay.test/pay/{body['order_id']}",
            "actual_amount": body["amount"],
        },
    })


def push_service_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"code": 0, "message": "", "data": {}})


# =============================================================================
# Time and configuration
# =============================================================================

@pytest.fixture
def start_time() -> datetime:
    """Fixed order-creation time used by the scenario tests."""
    return datetime(2024, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time: datetime) -> FakeClock:
    return FakeClock(start_time)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cardshop.db"


@pytest.fixture
def config(tmp_path: Path, db_path: Path) -> ShopConfig:
    return ShopConfig(
        database_url=f"sqlite:///{db_path}",
        payment_api_url="https://pay.test/api/v1/order/create-transaction",
        feed_url="https://feed.test/v1/accounts/T/transactions/trc20",
        activation_log_path=str(tmp_path / "data.txt"),
        admin_token=SecretStr(ADMIN_TOKEN),
        test_mode=False,
        notification_workers=2,
    )


# =============================================================================
# Storage
# =============================================================================

@pytest.fixture
def db(config: ShopConfig):
    """Fresh file-backed SQLite database (file-backed so threads share it)."""
    database = Database(config.database_url)
    database.create_schema()
    yield database
    database.dispose()


@pytest.fixture
def order_store(db: Database) -> OrderStore:
    return OrderStore(db)


@pytest.fixture
def inventory(db: Database) -> InventoryLedger:
    return InventoryLedger(db)


@pytest.fixture
def settings_store(db: Database) -> SettingsStore:
    return SettingsStore(db)


@pytest.fixture
def product(inventory: InventoryLedger) -> Product:
    """A card product priced at 199 with five codes."""
    return inventory.add_product("Test card", Decimal("199"), TEST_CODES)


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def feed() -> FakeFeed:
    return FakeFeed()


@pytest.fixture
def payment_transport() -> RecordingTransport:
    return RecordingTransport(payment_service_ok)


@pytest.fixture
def gateway(config: ShopConfig, payment_transport: RecordingTransport) -> PaymentGatewayClient:
    return PaymentGatewayClient(
        api_url=config.payment_api_url,
        token=config.payment_api_token.get_secret_value(),
        notify_url=config.notify_url,
        redirect_url=config.redirect_url,
        client=payment_transport.client(),
    )


@pytest.fixture
def amounts() -> AmountDisambiguator:
    """Always draws suffix 37, so a 199 product costs 199.037."""
    return AmountDisambiguator(randint=lambda low, high: FIXED_SUFFIX)


@pytest.fixture
def push_transport() -> RecordingTransport:
    return RecordingTransport(push_service_ok)


@pytest.fixture
def smtp_factory() -> FakeSMTPFactory:
    return FakeSMTPFactory()


@pytest.fixture
def channels(push_transport: RecordingTransport, smtp_factory: FakeSMTPFactory) -> NotificationChannels:
    """Recording push and email transports."""
    return NotificationChannels(
        push=PushChannel(client=push_transport.client()),
        email=EmailChannel(smtp_factory=smtp_factory),
    )


@pytest.fixture
def dispatcher(settings_store: SettingsStore, channels: NotificationChannels):
    dispatcher = NotificationDispatcher(settings_store=settings_store, channels=channels, max_workers=2)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def service(
    config: ShopConfig,
    db: Database,
    order_store: OrderStore,
    inventory: InventoryLedger,
    settings_store: SettingsStore,
    amounts: AmountDisambiguator,
    gateway: PaymentGatewayClient,
    feed: FakeFeed,
    dispatcher: NotificationDispatcher,
    clock: FakeClock,
) -> OrderService:
    """OrderService wired to the temporary database and all fakes."""
    return OrderService(
        config=config,
        db=db,
        order_store=order_store,
        inventory=inventory,
        settings_store=settings_store,
        amounts=amounts,
        gateway=gateway,
        feed=feed,
        dispatcher=dispatcher,
        clock=clock,
    )


def wait_all(futures) -> list:
    """Block until dispatched notifications finish (tests only)."""
    return [f.result(timeout=5) for f in futures]
