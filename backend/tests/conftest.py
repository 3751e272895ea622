"""
Pytest fixtures for test database, client, payment gateway and notifier.

Each test gets a fresh database: a SQLite file under tmp_path by default, or
the PostgreSQL database named by TEST_DATABASE_URL.
"""

import os

os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENVIRONMENT", "test")

from dataclasses import dataclass
from datetime import date, time, timedelta
from decimal import Decimal
from itertools import count
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.api.deps import get_notifier, get_payment_gateway
from tourbooking.core.exceptions import ExternalServiceError
from tourbooking.db.base import Base
from tourbooking.db.session import create_engine_for, get_db, make_sessionmaker
from tourbooking.infrastructure.payments import PaymentGateway, PaymentIntent, Refund
from tourbooking.main import app
from tourbooking.models.ticket import TicketType
from tourbooking.schemas.booking import CustomerIn
from tourbooking.schemas.ticket import PricingRuleIn, RecipeItem, TicketCreate
from tourbooking.schemas.tour import ScheduleConfig, TourCreate
from tourbooking.services import catalog_service, tour_service
from tourbooking.services.notification_service import BookingContext, Notifier, drain_notifications
from tourbooking.services.schedule import utc_today

SLOT_TIME = time(9, 0)


class FakePaymentGateway(PaymentGateway):
    """Records processor calls; refunds and metadata updates can be told to fail."""

    def __init__(self) -> None:
        self._ids = count(1)
        self.intents: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.fail_refunds = False
        self.fail_metadata_updates = False

    async def create_intent(self, amount: Decimal, metadata: dict[str, str]) -> PaymentIntent:
        intent_id = f"pi_test_{next(self._ids)}"
        self.intents[intent_id] = {"amount": amount, "metadata": dict(metadata)}
        return PaymentIntent(id=intent_id, client_secret=f"{intent_id}_secret")

    async def update_intent_metadata(self, intent_id: str, metadata: dict[str, str]) -> None:
        if self.fail_metadata_updates:
            raise ExternalServiceError("api_connection_error", code="stripe_error")
        self.intents[intent_id]["metadata"].update(metadata)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount: Optional[Decimal],
        reason: Optional[str],
        metadata: dict[str, str],
    ) -> Refund:
        if self.fail_refunds:
            raise ExternalServiceError("card_declined", code="stripe_error")
        refund_id = f"re_test_{next(self._ids)}"
        self.refunds.append(
            {"id": refund_id, "payment_intent": payment_intent_id, "amount": amount, "metadata": metadata}
        )
        return Refund(id=refund_id, status="pending")


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.confirmed: list[str] = []
        self.cancelled: list[tuple[str, Optional[str]]] = []

    async def booking_confirmed(self, ctx: BookingContext) -> None:
        self.confirmed.append(ctx.booking.booking_reference)

    async def booking_cancelled(self, ctx: BookingContext, reason: Optional[str]) -> None:
        self.cancelled.append((ctx.booking.booking_reference, reason))


@dataclass
class Catalog:
    tour_id: int
    adult_id: int
    child_id: int
    family_id: int


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    url = os.environ.get("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"
    engine = create_engine_for(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await drain_notifications()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, gateway, notifier) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client with one fresh session per request and fake collaborators."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def slot_date() -> date:
    return utc_today() + timedelta(days=7)


@pytest.fixture
def customer() -> CustomerIn:
    return CustomerIn(email="Ada@Example.com", first_name="Ada", last_name="Lovelace", phone="0400 000 000")


async def make_tour(
    db: AsyncSession,
    capacity: int = 10,
    booking_window_days: int = 90,
    days_of_week: Optional[list[int]] = None,
    times: Optional[list[str]] = None,
    blackout_ranges: Optional[list[dict]] = None,
) -> int:
    tour = await tour_service.create_tour(
        db,
        TourCreate(name="Harbour Walk", capacity=capacity, booking_window_days=booking_window_days),
    )
    await tour_service.set_schedule(
        db,
        tour.id,
        ScheduleConfig(
            days_of_week=days_of_week if days_of_week is not None else [0, 1, 2, 3, 4, 5, 6],
            times=times or ["09:00", "14:00"],
            blackout_ranges=blackout_ranges or [],
        ),
    )
    return tour.id


@pytest_asyncio.fixture
async def catalog(db_session: AsyncSession) -> Catalog:
    """Daily tour (09:00, 14:00, capacity 10) with adult, child and family tickets priced."""
    tour_id = await make_tour(db_session)
    adult = await catalog_service.create_ticket(db_session, TicketCreate(name="Adult"))
    child = await catalog_service.create_ticket(db_session, TicketCreate(name="Child"))
    family = await catalog_service.create_ticket(
        db_session, TicketCreate(name="Family", type=TicketType.COMBINED)
    )
    await catalog_service.set_recipe(
        db_session,
        family.id,
        [RecipeItem(atomic_ticket_id=adult.id, quantity=2), RecipeItem(atomic_ticket_id=child.id, quantity=2)],
    )
    await catalog_service.set_tour_pricing(
        db_session,
        tour_id,
        [
            PricingRuleIn(ticket_id=adult.id, price=Decimal("50.00")),
            PricingRuleIn(ticket_id=child.id, price=Decimal("25.00")),
            PricingRuleIn(ticket_id=family.id, price=Decimal("120.00")),
        ],
    )
    return Catalog(tour_id=tour_id, adult_id=adult.id, child_id=child.id, family_id=family.id)


async def refetch(db: AsyncSession, model, object_id: int):
    """Re-read a row, overwriting whatever the identity map holds."""
    result = await db.execute(
        select(model).where(model.id == object_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()
