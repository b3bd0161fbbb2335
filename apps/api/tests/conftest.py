import asyncio
import json
from typing import Dict, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from routers import rate_limit
from services.payments import (
    BasePaymentGateway,
    CheckoutSession,
    PaymentGatewayRegistry,
    PaymentVerification,
    WebhookEvent,
    get_payment_gateways,
)
from services.pricing import seed_default_packages
from services.session_token import create_session_token


class FakeGateway(BasePaymentGateway):
    """In-memory provider whose verdicts tests steer through attributes."""

    method = "card"

    def __init__(self, provider: str = "stripe") -> None:
        super().__init__()
        self.provider = provider
        self.status = "succeeded"
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.created = 0
        self.verify_calls = 0

    def is_configured(self) -> bool:
        return True

    async def create_checkout(self, *, user_id, package, success_url, cancel_url, locale="en", customer_email=None):
        self.created += 1
        session_id = f"{self.provider}_sess_{self.created}"
        return CheckoutSession(provider=self.provider, session_id=session_id, redirect_url=f"https://pay.test/{session_id}")

    async def verify_payment(self, provider_ref: str) -> PaymentVerification:
        self.verify_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PaymentVerification(
            success=self.status == "succeeded",
            status=self.status,
            provider_ref=provider_ref,
            payment_ref=f"pi_{provider_ref}",
        )

    async def parse_webhook(self, body: bytes, headers) -> Optional[WebhookEvent]:
        data = json.loads(body)
        return WebhookEvent(
            provider=self.provider,
            event_id=data["id"],
            type=data["type"],
            provider_ref=data.get("provider_ref"),
            payment_ref=data.get("payment_ref"),
        )


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "oracle.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as session:
        await seed_default_packages(session)

    yield maker
    await engine.dispose()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway("stripe")


@pytest_asyncio.fixture
async def client(session_maker, fake_gateway):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    registry = PaymentGatewayRegistry([fake_gateway])
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateways] = lambda: registry
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateways, None)


@pytest.fixture
def auth_headers():
    def _headers(user_id: str, email: Optional[str] = None) -> Dict[str, str]:
        token = create_session_token(user_id, email=email or f"{user_id}@example.com")["token"]
        return {"Authorization": f"Bearer {token}"}

    return _headers
