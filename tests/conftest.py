"""Shared fixtures: in-memory database, fake gateway, frozen clock."""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["PAYMENT_GATEWAY"] = "manual"
os.environ["ENVIRONMENT"] = "development"
os.environ["PLATFORM_FEE_PERCENT"] = "20.00"
os.environ["PAYMENT_HOLD_DAYS"] = "3"
for _name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", "NOTIFICATIONS_REST_URL", "NOTIFICATIONS_SERVICE_KEY", "ADMIN_USER_IDS"):
    os.environ.pop(_name, None)

import asyncio
from collections import defaultdict, deque
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base, build_session_factory
from app.domain.booking_state import Actor, BookingStatus
from app.gateways.base import GatewayResult, GatewayType, PaymentGateway
from app.services.booking_engine import BookingStateMachine
from app.services.commission_service import CommissionService
from app.services.gateway_service import GatewayService

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when a test says so."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """Gateway that records calls and returns queued results.

    Without a queued result every call succeeds with an id derived from the
    idempotency key.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.results: dict[str, deque] = defaultdict(deque)
        self.delays: dict[str, float] = {}

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.MANUAL

    def queue(self, operation: str, *results: GatewayResult) -> None:
        self.results[operation].extend(results)

    def calls_for(self, operation: str) -> list[dict]:
        return [kwargs for op, kwargs in self.calls if op == operation]

    async def _respond(self, operation: str, **kwargs) -> GatewayResult:
        self.calls.append((operation, kwargs))
        if self.delays.get(operation):
            await asyncio.sleep(self.delays[operation])
        if self.results[operation]:
            return self.results[operation].popleft()
        key = kwargs.get("idempotency_key", "")
        return GatewayResult(success=True, transaction_id=f"{operation}_{key[:16]}")

    async def capture(self, amount, currency, reference_id, idempotency_key, payment_method_id=None, metadata=None):
        return await self._respond(
            "capture",
            amount=amount,
            currency=currency,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
            payment_method_id=payment_method_id,
        )

    async def lookup_capture(self, idempotency_key):
        return await self._respond("lookup", idempotency_key=idempotency_key)

    async def payout(self, amount, currency, destination, reference_id, idempotency_key):
        return await self._respond(
            "payout",
            amount=amount,
            currency=currency,
            destination=destination,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )

    async def refund(self, transaction_id, amount, reason, idempotency_key):
        return await self._respond(
            "refund",
            transaction_id=transaction_id,
            amount=amount,
            reason=reason,
            idempotency_key=idempotency_key,
        )


class RecordingEmitter:
    """Notification emitter that keeps every event."""

    def __init__(self):
        self.events = []

    async def emit(self, event) -> None:
        self.events.append(event)

    @property
    def kinds(self) -> list[str]:
        return [event.kind.value for event in self.events]


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def machine(session_factory, fake_gateway, emitter, clock) -> BookingStateMachine:
    return BookingStateMachine(
        session_factory,
        gateway=GatewayService(fake_gateway, timeout_seconds=5),
        emitter=emitter,
        clock=clock,
        commission=CommissionService(platform_fee_percent=20),
        hold_days=3,
        release_max_attempts=3,
        release_backoff_base_seconds=60,
    )


@pytest.fixture
def owner() -> Actor:
    return Actor(user_id=uuid4())


@pytest.fixture
def sitter() -> Actor:
    return Actor(user_id=uuid4())


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=uuid4(), is_admin=True)


@pytest.fixture
def stranger() -> Actor:
    return Actor(user_id=uuid4())


class BookingFlow:
    """Drives a fresh booking to a given point of its lifecycle."""

    def __init__(self, machine: BookingStateMachine, owner: Actor, sitter: Actor, clock: FrozenClock):
        self.machine = machine
        self.owner = owner
        self.sitter = sitter
        self.clock = clock

    async def requested(self, total_price: int = 10000, **kwargs):
        start = self.clock.now + timedelta(days=1)
        return await self.machine.create_booking(
            self.owner,
            sitter_id=self.sitter.user_id,
            service_type=kwargs.pop("service_type", "walk"),
            start_time=start,
            end_time=start + timedelta(hours=1),
            total_price=total_price,
            **kwargs,
        )

    async def confirmed(self, **kwargs):
        booking = await self.requested(**kwargs)
        return await self.machine.update_booking_status(
            self.sitter, booking.id, BookingStatus.CONFIRMED
        )

    async def held(self, **kwargs):
        booking = await self.confirmed(**kwargs)
        return await self.machine.authorize_and_hold(
            self.owner, booking.id, payment_method_id="pm_card_visa"
        )

    async def in_progress(self, **kwargs):
        booking = await self.held(**kwargs)
        return await self.machine.update_booking_status(
            self.sitter, booking.id, BookingStatus.IN_PROGRESS
        )

    async def completed(self, **kwargs):
        booking = await self.in_progress(**kwargs)
        return await self.machine.mark_service_completed(self.sitter, booking.id)

    async def completion_confirmed(self, **kwargs):
        booking = await self.completed(**kwargs)
        return await self.machine.confirm_service_completion(self.owner, booking.id)


@pytest.fixture
def flow(machine, owner, sitter, clock) -> BookingFlow:
    return BookingFlow(machine, owner, sitter, clock)
