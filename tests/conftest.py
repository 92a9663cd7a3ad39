"""Shared test fixtures and configuration."""

import json
import os
from typing import Any, Dict, List

import httpx
import pytest
from cryptography.fernet import Fernet

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CONFIG_ENCRYPTION_KEY", Fernet.generate_key().decode())

from qr_payments.config_store import ConfigStore  # noqa: E402
from qr_payments.database import (  # noqa: E402
    Base,
    create_async_engine,
    get_async_session_factory,
)
from qr_payments.gateways import GatewayKind, CreatePaymentRequest, get_gateway  # noqa: E402
from qr_payments.http_client import GatewayHttpClient  # noqa: E402
from qr_payments.services import PaymentService  # noqa: E402

VALID_OTP = "UZUM" + "0123456789ABCDEF" * 3

FASTPAY_CONFIG = {
    "merchant_service_user_id": "12345",
    "secret_key": "fastpay-secret",
    "service_id": "777",
    "api_base_url": "https://fastpay.test",
}

CLICK_CONFIG = {
    "service_id": "101",
    "merchant_id": "202",
    "merchant_user_id": "303",
    "secret_key": "click-secret",
    "api_base_url": "https://click.test",
}

PAYME_CONFIG = {
    "cashbox_id": "cashbox-1",
    "key_password": "payme-key",
    "api_base_url": "https://payme.test",
}

GATEWAY_CONFIGS = {
    GatewayKind.FASTPAY: FASTPAY_CONFIG,
    GatewayKind.CLICK_PASS: CLICK_CONFIG,
    GatewayKind.PAYME_QR: PAYME_CONFIG,
}

SECRETS = {"secret_key", "key_password"}


class GatewayStub:
    """
    Scripted gateway behind ``httpx.MockTransport``.

    Queue dicts (200 JSON), ``(status, body)`` tuples, or httpx exceptions;
    each request consumes one item.
    """

    def __init__(self):
        self.responses: List[Any] = []
        self.requests: List[httpx.Request] = []

    def queue(self, *items: Any) -> None:
        self.responses.extend(items)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(500, json={"error_code": 500, "error_message": "unscripted call"})
        item = self.responses.pop(0)
        if isinstance(item, type) and issubclass(item, httpx.TransportError):
            raise item("simulated failure", request=request)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, tuple):
            status, body = item
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=item)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last_json(self) -> Dict[str, Any]:
        return json.loads(self.requests[-1].content)


class RecordedSleep:
    """Backoff sleep that returns immediately and remembers the delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def mock_api_key():
    """API key accepted by the HTTP adapter."""
    return os.environ["API_KEY"]


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {
        "Authorization": f"Bearer {mock_api_key}",
        "X-Employee-ID": "emp-1",
    }


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
async def http_client(gateway_stub):
    client = httpx.AsyncClient(transport=gateway_stub.transport())
    yield GatewayHttpClient(client)
    await client.aclose()


@pytest.fixture
def recorded_sleep():
    return RecordedSleep()


async def seed_config(session_factory, kind: GatewayKind, values: Dict[str, str]) -> ConfigStore:
    store = ConfigStore(session_factory, kind)
    for key, value in values.items():
        await store.set(key, value, encrypt=key in SECRETS)
    return store


@pytest.fixture
def make_service(db_session, session_factory, http_client, recorded_sleep):
    """Build a PaymentService for a gateway, seeding its configuration first."""

    async def _make(kind: GatewayKind = GatewayKind.FASTPAY, configured: bool = True, **overrides):
        store = ConfigStore(session_factory, kind)
        if configured:
            store = await seed_config(session_factory, kind, {**GATEWAY_CONFIGS[kind], **overrides})
        return PaymentService(
            db_session,
            get_gateway(kind),
            store,
            http_client,
            sleep=recorded_sleep,
        )

    return _make


@pytest.fixture
def fastpay_request():
    return CreatePaymentRequest(
        amount_major="500.00",
        otp_data=VALID_OTP,
        employee_id="emp-1",
        terminal_id="T01",
    )


@pytest.fixture
def click_request():
    return CreatePaymentRequest(
        amount_major="150.50",
        otp_data="123456",
        employee_id="emp-2",
        terminal_id="T02",
    )


@pytest.fixture
def payme_request():
    return CreatePaymentRequest(
        amount_major="75.25",
        employee_id="emp-3",
        terminal_id="T03",
        description="Coffee",
    )
