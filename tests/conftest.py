"""Test fixtures: file-backed SQLite store, seed helpers and a fake gateway."""

import asyncio
import json
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_reconciler.api.app import create_app
from payment_reconciler.config import NotificationConfig, Settings
from payment_reconciler.database import create_schema, create_session_factory, get_engine
from payment_reconciler.gateway import AccessToken, CaptureResult, GatewayOrder, ReturnUrls
from payment_reconciler.models import (
    DepositRecord,
    Notification,
    Order,
    PaymentEvent,
    PaymentRecord,
    Wallet,
    WalletTransaction,
)
from payment_reconciler.services import NotificationDispatcher, ReconciliationService

CHAT_WEBHOOK_URL = "https://chat.example.test/hooks/payments"
EMAIL_ENDPOINT_URL = "https://mail.example.test/send"


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test.

    A file database (not :memory:) so concurrent sessions get their own
    connections and contend on real locks.
    """
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Single session for component tests."""
    async with session_factory() as session:
        yield session


class Store:
    """Seeds rows and reads them back through fresh sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _add(self, *rows: Any) -> None:
        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def deposit(
        self,
        deposit_id: str = "D1",
        *,
        user_id: str = "U1",
        amount: Decimal = Decimal("100000"),
        status: str = "pending",
        payment_id: str | None = None,
    ) -> None:
        await self._add(
            DepositRecord(
                id=deposit_id,
                user_id=user_id,
                amount=amount,
                status=status,
                payment_id=payment_id,
                payment_data={},
            )
        )

    async def wallet(
        self,
        user_id: str = "U1",
        *,
        balance: Decimal = Decimal("0"),
        email: str | None = "buyer@example.com",
    ) -> None:
        await self._add(Wallet(user_id=user_id, balance=balance, email=email))

    async def checkout(
        self,
        payment_id: str = "P1",
        *,
        order_id: str = "O1",
        order_number: str = "ORD-1001",
        gateway_order_id: str = "GW-P1",
        status: str = "pending",
        order_status: str = "PENDING_PAYMENT",
        amount: Decimal = Decimal("49.99"),
        capture_id: str | None = None,
        provider: str = "paypal",
    ) -> None:
        await self._add(
            Order(
                id=order_id,
                order_number=order_number,
                status=order_status,
                customer_email="buyer@example.com",
                total_amount=amount,
            ),
            PaymentRecord(
                id=payment_id,
                order_id=order_id,
                payment_id=gateway_order_id,
                payment_provider=provider,
                capture_id=capture_id,
                amount=amount,
                currency="USD",
                status=status,
                payment_data={"created_by": "checkout"},
            ),
        )

    async def scalar(self, stmt: Any) -> Any:
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar()

    async def balance(self, user_id: str = "U1") -> Decimal | None:
        return await self.scalar(select(Wallet.balance).where(Wallet.user_id == user_id))

    async def get_deposit(self, deposit_id: str = "D1") -> DepositRecord:
        async with self.session_factory() as session:
            return await session.get(DepositRecord, deposit_id)

    async def get_payment(self, payment_id: str = "P1") -> PaymentRecord:
        async with self.session_factory() as session:
            return await session.get(PaymentRecord, payment_id)

    async def get_order(self, order_id: str = "O1") -> Order:
        async with self.session_factory() as session:
            return await session.get(Order, order_id)

    async def count(self, model: Any) -> int:
        return await self.scalar(select(func.count()).select_from(model))

    async def journal_count(self) -> int:
        return await self.count(WalletTransaction)

    async def notification_count(self) -> int:
        return await self.count(Notification)

    async def event_outcomes(self) -> list[str]:
        """Audited outcomes, sorted; created_at ties within a second."""
        async with self.session_factory() as session:
            rows = await session.execute(select(PaymentEvent.outcome))
            return sorted(rows.scalars())


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


class FakeGateway:
    """In-process gateway double; records every call."""

    provider_name = "paypal"

    def __init__(
        self,
        *,
        configured: bool = True,
        order_id: str = "GW-ORDER-1",
        capture_status: str = "COMPLETED",
        capture_amount: Decimal | None = None,
        error: Exception | None = None,
    ):
        self.configured = configured
        self.order_id = order_id
        self.capture_status = capture_status
        self.capture_amount = capture_amount
        self.error = error
        self.calls: list[tuple[Any, ...]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def get_access_token(self) -> AccessToken:
        return AccessToken(value="test-token", expires_in=3600, obtained_at=datetime.now(timezone.utc))

    async def create_order(
        self,
        reference_id: str,
        amount: Decimal,
        currency: str,
        return_urls: ReturnUrls,
        description: str | None = None,
    ) -> GatewayOrder:
        self.calls.append(("create", reference_id, amount, currency, return_urls))
        if self.error:
            raise self.error
        return GatewayOrder(
            order_id=self.order_id,
            status="CREATED",
            approval_url=f"https://www.sandbox.paypal.com/checkoutnow?token={self.order_id}",
            raw={"id": self.order_id, "status": "CREATED"},
        )

    async def capture_order(self, gateway_order_id: str) -> CaptureResult:
        # Yield so concurrent captures interleave before the ledger write
        await asyncio.sleep(0)
        self.calls.append(("capture", gateway_order_id))
        if self.error:
            raise self.error
        return CaptureResult(
            order_id=gateway_order_id,
            status=self.capture_status,
            capture_id=f"CAP-{gateway_order_id}",
            amount=self.capture_amount,
            currency="USD",
            payer_email="payer@example.com",
            raw={"id": gateway_order_id, "status": self.capture_status},
        )

    @property
    def captures(self) -> int:
        return sum(1 for call in self.calls if call[0] == "capture")


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


class ChannelRecorder:
    """Records outbound chat/email requests through an httpx MockTransport."""

    def __init__(self, fail: set[str] | None = None):
        self.fail = fail or set()
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        channel = "chat" if str(request.url) == CHAT_WEBHOOK_URL else "email"
        if channel in self.fail:
            return httpx.Response(503, json={"error": "unavailable"})
        return httpx.Response(204 if channel == "chat" else 200)

    def bodies(self, url: str) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if str(r.url) == url]

    @property
    def chat_titles(self) -> list[str]:
        return [body["embeds"][0]["title"] for body in self.bodies(CHAT_WEBHOOK_URL)]


@pytest.fixture
def channels() -> ChannelRecorder:
    return ChannelRecorder()


@pytest_asyncio.fixture
async def dispatcher(session_factory, channels) -> AsyncGenerator[NotificationDispatcher, None]:
    config = NotificationConfig(
        webhook_url=CHAT_WEBHOOK_URL,
        email_endpoint_url=EMAIL_ENDPOINT_URL,
        email_api_key="mail-key",
    )
    async with httpx.AsyncClient(transport=httpx.MockTransport(channels)) as client:
        yield NotificationDispatcher(config, session_factory, client=client)


@pytest.fixture
def reconciler(session_factory, gateway, dispatcher) -> ReconciliationService:
    return ReconciliationService(
        session_factory,
        gateway,
        dispatcher,
        currency="USD",
        site_url="https://shop.example.test",
    )


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite://",
        "host": "127.0.0.1",
        "port": 8000,
        "debug": False,
        "log_level": "WARNING",
        "paypal_client_id": "client",
        "paypal_client_secret": "secret",
        "paypal_mode": "sandbox",
        "paypal_currency": "USD",
        "paypal_timeout_seconds": 5.0,
        "site_url": "https://shop.example.test",
        "notify_webhook_url": CHAT_WEBHOOK_URL,
        "email_endpoint_url": EMAIL_ENDPOINT_URL,
        "email_api_key": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def app(session_factory, gateway, dispatcher) -> FastAPI:
    return create_app(make_settings(), session_factory=session_factory, gateway=gateway, dispatcher=dispatcher)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client bound to the app in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
