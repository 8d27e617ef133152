from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import db
from app.services.errors import BillingError, CompetitorLookupError
from app.types.review_contract import PlaceResult, PostResult, RawReview, ReplyOutput
from db.models import Business, PlatformAccount


# ---------------------------------------------------------------------------
# In-memory database, one per test
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def sessions():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    await db.create_all(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeGateway:
    from_number = "+15550000000"

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.sent: list[tuple[str, str]] = []
        self._n = 0

    async def send(self, to: str, body: str) -> str:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("gateway unavailable")
        self._n += 1
        self.sent.append((to, body))
        return f"msg-{self._n}"


class FakeGenerator:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def generate_reply(self, review, business) -> ReplyOutput:
        self.calls += 1
        if self.fail:
            raise RuntimeError("model unavailable")
        return ReplyOutput(
            draft_text=f"Option 1: Thanks {review.author}!\nOption 2: Thank you for visiting {business.name}.",
            confidence=0.9,
        )


class FakeSource:
    def __init__(self, reviews: list[RawReview] | None = None, error: Exception | None = None):
        self.reviews = list(reviews or [])
        self.error = error
        self.calls: list[tuple[str, datetime | None]] = []

    async def fetch_reviews(self, source_id, since=None):
        self.calls.append((source_id, since))
        if self.error:
            raise self.error
        return list(self.reviews)


class FakePoster:
    platform = "google"

    def __init__(self, success: bool = True, error: Exception | None = None):
        self.success = success
        self.error = error
        self.posted: list[tuple[str, str]] = []

    async def post_reply(self, resource_ref, text) -> PostResult:
        if self.error:
            raise self.error
        self.posted.append((resource_ref, text))
        if not self.success:
            return PostResult(success=False, platform=self.platform, error="HTTP 500: boom")
        return PostResult(success=True, platform=self.platform, external_response_id=f"reply-{resource_ref}")


class FakeBilling:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.canceled: list[str] = []
        self.portals: list[str] = []

    async def create_portal_session(self, customer_id):
        if self.fail:
            raise BillingError("stripe down")
        self.portals.append(customer_id)
        return f"https://billing.example/{customer_id}"

    async def cancel_subscription(self, subscription_id):
        if self.fail:
            raise BillingError("stripe down")
        self.canceled.append(subscription_id)


class FakeDirectory:
    def __init__(self, places: list[PlaceResult] | None = None, fail: bool = False):
        self.places = list(places or [])
        self.fail = fail

    async def nearby(self, lat, lng, exclude_place_id=None):
        if self.fail:
            raise CompetitorLookupError("places down")
        return list(self.places)

    async def search(self, name, lat, lng):
        if self.fail:
            raise CompetitorLookupError("places down")
        return [p for p in self.places if name.lower() in p.name.lower()]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def billing():
    return FakeBilling()


@pytest.fixture
def directory():
    return FakeDirectory([
        PlaceResult(place_id="p1", name="Luigi's Trattoria", rating=4.5, review_count=320),
        PlaceResult(place_id="p2", name="Harbor Grill", rating=4.1, review_count=88),
    ])


# ---------------------------------------------------------------------------
# Data helpers
# ---------------------------------------------------------------------------

OWNER = "+15551234567"


def raw_review(external_id="r1", rating=5, text="Great food, friendly staff", minutes_ago=10, **kw):
    return RawReview(
        external_id=external_id,
        rating=rating,
        text=text,
        author=kw.pop("author", "Dana Smith"),
        date=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
        metadata=kw.pop("metadata", {"resource_name": f"accounts/1/locations/2/reviews/{external_id}"}),
    )


async def add_business(sessions, **kw) -> Business:
    fields = {
        "name": "Blue Door Cafe",
        "owner_phone": OWNER,
        "stripe_customer_id": "cus_123",
        "stripe_subscription_id": "sub_123",
        "subscription_state": "active",
        "latitude": 40.7,
        "longitude": -74.0,
    }
    fields.update(kw)
    async with sessions() as s, s.begin():
        business = Business(**fields)
        s.add(business)
    return business


async def add_account(sessions, business, **kw) -> PlatformAccount:
    fields = {"platform": "google", "source_id": "accounts/1/locations/2", "access_token": "tok"}
    fields.update(kw)
    async with sessions() as s, s.begin():
        account = PlatformAccount(business_id=business.id, **fields)
        s.add(account)
    return account
