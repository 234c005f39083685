"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A real SQLite ledger (aiosqlite) per test
- Deterministic clock
- Fake hint generator, payment gateway and notifier
- Service instances wired to the fakes
- Async API client with the service container and auth overridden
"""

import os
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import jwt
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing wispr modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./wispr-test.db")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret-key-for-jwt-signing-min-32-chars")
os.environ.setdefault("QPAY_WEBHOOK_SECRET", "test-qpay-webhook-secret")
os.environ.setdefault("APP_BASE_URL", "https://wispr.test")
os.environ.setdefault("LEDGER_TIMEZONE", "UTC")

from wispr.api.dependencies import ServiceContainer, get_container
from wispr.config import settings
from wispr.db.models import Account, Compliment, Invoice
from wispr.db.session import create_all_tables, create_engine_for_url, create_session_factory
from wispr.exceptions import HintGenerationFailedError
from wispr.models.api import InvoiceStatus
from wispr.models.domain import Deeplink, HintContext
from wispr.services.hint_redemption import HintRedemptionService
from wispr.services.invoice_issuance import InvoiceService
from wispr.services.ledger_store import LedgerStore
from wispr.services.payment_provider import GatewayInvoice, GatewayInvoiceRequest
from wispr.services.webhook_reconciler import WebhookReconciler

DAILY_QUOTA = 5

# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def fixed_datetime() -> datetime:
    """Fixed datetime for deterministic testing."""
    return datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def clock(fixed_datetime: datetime) -> FakeClock:
    return FakeClock(fixed_datetime)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database file per test."""
    db_engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_all_tables(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> LedgerStore:
    """Ledger store without retry backoff."""
    return LedgerStore(session_factory, max_attempts=4, retry_backoff_seconds=0)


async def seed_account(
    session_factory: async_sessionmaker[AsyncSession],
    account_id: str,
    daily_hints_used: int = 0,
    last_daily_reset_at: datetime | None = None,
    bonus_hints: int = 0,
) -> None:
    """Insert an account row directly."""
    async with session_factory() as session:
        session.add(
            Account(
                account_id=account_id,
                daily_hints_used=daily_hints_used,
                last_daily_reset_at=last_daily_reset_at,
                bonus_hints=bonus_hints,
            )
        )
        await session.commit()


async def seed_compliment(
    session_factory: async_sessionmaker[AsyncSession],
    compliment_id: str,
    owner_account_id: str,
    text: str = "Таны инээмсэглэл үргэлж гэрэлтдэг.",
    hints: list[str] | None = None,
    frequency: str = "",
    location: str = "",
) -> None:
    """Insert a compliment row directly."""
    async with session_factory() as session:
        session.add(
            Compliment(
                id=compliment_id,
                owner_account_id=owner_account_id,
                text=text,
                hint_frequency=frequency,
                hint_location=location,
                hints=list(hints or []),
            )
        )
        await session.commit()


async def seed_invoice(
    session_factory: async_sessionmaker[AsyncSession],
    local_invoice_id: str,
    account_id: str,
    num_hints: int = 5,
    amount: int = 6900,
    gateway_invoice_id: str | None = None,
    status: InvoiceStatus = InvoiceStatus.PENDING,
    created_at: datetime | None = None,
) -> None:
    """Insert an invoice row directly."""
    async with session_factory() as session:
        session.add(
            Invoice(
                local_invoice_id=local_invoice_id,
                gateway_invoice_id=gateway_invoice_id,
                account_id=account_id,
                amount=amount,
                num_hints=num_hints,
                status=status.value,
                created_at=created_at or datetime(2025, 1, 15, 11, 0, tzinfo=UTC),
            )
        )
        await session.commit()


@pytest.fixture
def seed(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Seeding helpers bound to the test database."""

    class _Seed:
        async def account(self, account_id: str, **kwargs: Any) -> None:
            await seed_account(session_factory, account_id, **kwargs)

        async def compliment(self, compliment_id: str, owner_account_id: str, **kwargs: Any) -> None:
            await seed_compliment(session_factory, compliment_id, owner_account_id, **kwargs)

        async def invoice(self, local_invoice_id: str, account_id: str, **kwargs: Any) -> None:
            await seed_invoice(session_factory, local_invoice_id, account_id, **kwargs)

    return _Seed()


# ============================================================================
# Collaborator Fakes
# ============================================================================


class FakeHintGenerator:
    """HintGenerator returning numbered hints, or failing on demand."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, HintContext | None, list[str]]] = []
        self.fail_with: Exception | None = None
        self.before_return: Callable[[], Any] | None = None
        self.closed = False

    async def generate(
        self, text: str, context: HintContext | None, previous_hints: list[str]
    ) -> str:
        self.calls.append((text, context, list(previous_hints)))
        number = len(self.calls)
        if self.fail_with is not None:
            raise self.fail_with
        if self.before_return is not None:
            hook, self.before_return = self.before_return, None
            await hook()
        return f"Hint #{number}"

    async def close(self) -> None:
        self.closed = True


class FakeGateway:
    """PaymentGateway returning canned invoices and recording requests."""

    def __init__(self) -> None:
        self.requests: list[GatewayInvoiceRequest] = []
        self.fail_with: Exception | None = None
        self.on_request: Callable[[GatewayInvoiceRequest], Any] | None = None
        self.next_gateway_id = 90001
        self.closed = False

    async def create_invoice(self, request: GatewayInvoiceRequest) -> GatewayInvoice:
        self.requests.append(request)
        if self.on_request is not None:
            await self.on_request(request)
        if self.fail_with is not None:
            raise self.fail_with
        gateway_id = str(self.next_gateway_id)
        self.next_gateway_id += 1
        return GatewayInvoice(
            gateway_invoice_id=gateway_id,
            qr_text="0002010102121531...",
            qr_image="iVBORw0KGgoAAAANSUhEUg==",
            deeplinks=(
                Deeplink(
                    name="Khan bank",
                    link="khanbank://q?qPay_QRcode=abc",
                    logo="https://qpay.mn/q/logo/khanbank.png",
                ),
            ),
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def generator() -> FakeHintGenerator:
    return FakeHintGenerator()


@pytest.fixture
def failing_generator() -> FakeHintGenerator:
    fake = FakeHintGenerator()
    fake.fail_with = HintGenerationFailedError("model unavailable")
    return fake


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify = AsyncMock()
    mock.close = AsyncMock()
    return mock


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def redemption_service(
    store: LedgerStore, generator: FakeHintGenerator, clock: FakeClock
) -> HintRedemptionService:
    return HintRedemptionService(store, generator, DAILY_QUOTA, tz=UTC, clock=clock)


@pytest.fixture
def invoice_service(store: LedgerStore, gateway: FakeGateway, clock: FakeClock) -> InvoiceService:
    counter = iter(range(1, 10_000))
    return InvoiceService(
        store,
        gateway,
        callback_base_url="https://wispr.test",
        id_factory=lambda: f"inv-{next(counter):04d}",
        clock=clock,
    )


@pytest.fixture
def reconciler(store: LedgerStore, notifier: AsyncMock, clock: FakeClock) -> WebhookReconciler:
    return WebhookReconciler(store, notifier, clock=clock)


@pytest.fixture
def container(
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    store: LedgerStore,
    gateway: FakeGateway,
    generator: FakeHintGenerator,
    notifier: AsyncMock,
    redemption_service: HintRedemptionService,
    invoice_service: InvoiceService,
    reconciler: WebhookReconciler,
) -> ServiceContainer:
    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        store=store,
        gateway=gateway,
        generator=generator,
        notifier=notifier,
        redemption=redemption_service,
        invoices=invoice_service,
        reconciler=reconciler,
    )


# ============================================================================
# Auth Fixtures
# ============================================================================


def _make_token(account_id: str, secret: str | None = None, **claims: Any) -> str:
    payload = {"sub": account_id, **claims}
    return jwt.encode(payload, secret or settings.auth_jwt_secret, algorithm="HS256")


@pytest.fixture
def make_token() -> Callable[..., str]:
    """HS256 bearer token factory: make_token(account_id, secret=None, **claims)."""
    return _make_token


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    """Authorization header factory for an account id."""

    def _headers(account_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {_make_token(account_id)}"}

    return _headers


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def app(container: ServiceContainer) -> Generator[FastAPI, None, None]:
    """The application with the service container pointed at test fakes."""
    from wispr.main import app as main_app

    main_app.dependency_overrides[get_container] = lambda: container
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async test client (lifespan not run; services come from the override)."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
