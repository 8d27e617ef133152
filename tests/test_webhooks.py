import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

import main
from app.services.container import Services
from app.services.conversation import ConversationStateMachine
from app.services.ingestion import IngestionCoordinator
from app.services.notifications import NotificationDispatcher
from app.services.platforms import PlatformRegistry
from app.services.response_poster import ResponsePoster
from app.services.retry_scheduler import RetryScheduler
from conftest import OWNER, FakeGenerator, FakePoster, add_account, add_business
from config import settings
from db.models import DraftStatus, NotificationLog, ReplyDraft, Review


@pytest.fixture
def poster():
    return FakePoster()


@pytest_asyncio.fixture
async def client(sessions, gateway, billing, directory, poster, monkeypatch):
    monkeypatch.setattr(settings, "TELNYX_PUBLIC_KEY", None)
    monkeypatch.setattr(settings, "JOBS_TOKEN", None)
    registry = PlatformRegistry(posters={"google": lambda account: poster})
    dispatcher = NotificationDispatcher(sessions, gateway)
    services = Services(
        sessions=sessions,
        dispatcher=dispatcher,
        conversation=ConversationStateMachine(sessions, billing, directory, own_number=gateway.from_number),
        ingestion=IngestionCoordinator(sessions, registry, FakeGenerator(), dispatcher),
        retry=RetryScheduler(sessions, dispatcher),
        poster=ResponsePoster(sessions, registry),
    )
    main.app.dependency_overrides[main.get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_inbound_sms_replies_with_texml(client, sessions):
    await add_business(sessions)
    resp = await client.post("/webhooks/sms/inbound", data={"From": OWNER, "Body": "HELP", "MessageSid": "SM1"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/xml")
    assert "<Response><Message>SMS Commands:" in resp.text


@pytest.mark.asyncio
async def test_inbound_sms_without_body_is_rejected(client, sessions):
    resp = await client.post("/webhooks/sms/inbound", data={"From": OWNER})

    assert resp.status_code == 200
    assert "Invalid message received." in resp.text
    async with sessions() as s:
        assert (await s.execute(select(NotificationLog))).first() is None


@pytest.mark.asyncio
async def test_redelivered_inbound_sms_gets_empty_response(client, sessions):
    await add_business(sessions)
    form = {"From": OWNER, "Body": "PAUSE", "MessageSid": "SM-dup"}

    first = await client.post("/webhooks/sms/inbound", data=form)
    second = await client.post("/webhooks/sms/inbound", data=form)

    assert "<Message>" in first.text
    assert second.text.endswith("<Response/>")


@pytest.mark.asyncio
async def test_reply_text_is_xml_escaped(client, sessions):
    await add_business(sessions, name="Salt & Pepper")
    resp = await client.post("/webhooks/sms/inbound", data={"From": OWNER, "Body": "STATUS", "MessageSid": "SM2"})

    assert "Salt &amp; Pepper" in resp.text


@pytest.mark.asyncio
async def test_status_callback_updates_notification_log(client, sessions):
    async with sessions() as s, s.begin():
        s.add(NotificationLog(direction="outbound", from_phone="+15550000000", to_phone=OWNER,
                              body="hi", status="sent", gateway_message_id="msg-9"))

    resp = await client.post("/webhooks/sms/status", data={"MessageSid": "msg-9", "MessageStatus": "delivered"})
    unknown = await client.post("/webhooks/sms/status", data={"MessageSid": "nope", "MessageStatus": "failed"})

    assert resp.status_code == 200
    assert unknown.status_code == 200
    async with sessions() as s:
        entry = (await s.execute(select(NotificationLog))).scalar_one()
    assert entry.status == "delivered"


@pytest.mark.asyncio
async def test_telnyx_inbound_event_replies_over_sms(client, sessions, gateway):
    await add_business(sessions)
    event = {"data": {
        "event_type": "message.received",
        "payload": {"id": "tx-1", "from": {"phone_number": OWNER}, "text": "help"},
    }}

    resp = await client.post("/v1/sms/telnyx", json=event)

    assert resp.status_code == 200
    assert resp.text == "OK"
    assert len(gateway.sent) == 1
    assert gateway.sent[0][0] == OWNER
    assert gateway.sent[0][1].startswith("SMS Commands:")


@pytest.mark.asyncio
async def test_telnyx_delivery_event_updates_status(client, sessions):
    async with sessions() as s, s.begin():
        s.add(NotificationLog(direction="outbound", from_phone="+15550000000", to_phone=OWNER,
                              body="hi", status="sent", gateway_message_id="tx-out"))
    event = {"data": {
        "event_type": "message.finalized",
        "payload": {"id": "tx-out", "to": [{"phone_number": OWNER, "status": "delivered"}]},
    }}

    resp = await client.post("/v1/sms/telnyx", json=event)

    assert resp.status_code == 200
    async with sessions() as s:
        entry = (await s.execute(select(NotificationLog))).scalar_one()
    assert entry.status == "delivered"


@pytest.mark.asyncio
async def test_inbound_sms_with_blank_body_is_rejected(client, sessions):
    await add_business(sessions)
    resp = await client.post("/webhooks/sms/inbound", data={"From": OWNER, "Body": "   ", "MessageSid": "SM3"})

    assert "Invalid message received." in resp.text
    async with sessions() as s:
        assert (await s.execute(select(NotificationLog))).first() is None


@pytest.mark.parametrize("payload", [
    {"id": "tx-2", "from": {"phone_number": OWNER}, "text": "  "},
    {"id": "tx-3", "from": {"phone_number": OWNER}},
])
@pytest.mark.asyncio
async def test_telnyx_inbound_event_without_text_is_ignored(client, sessions, gateway, payload):
    await add_business(sessions)
    event = {"data": {"event_type": "message.received", "payload": payload}}

    resp = await client.post("/v1/sms/telnyx", json=event)

    assert resp.status_code == 200
    assert resp.text == "IGNORED"
    assert gateway.sent == []
    async with sessions() as s:
        assert (await s.execute(select(NotificationLog))).first() is None


@pytest.mark.asyncio
async def test_job_endpoints_require_token_when_configured(client, sessions, poster, monkeypatch):
    monkeypatch.setattr(settings, "JOBS_TOKEN", "s3cret")
    business = await add_business(sessions)
    await add_account(sessions, business)
    async with sessions() as s, s.begin():
        review = Review(business_id=business.id, platform="google", external_review_id="r1",
                        rating=5, text="Lovely", sentiment="positive", sentiment_score=1.0)
        s.add(review)
        await s.flush()
        s.add(ReplyDraft(review_id=review.id, draft_text="Thank you!", status=DraftStatus.APPROVED))

    denied = await client.post("/jobs/responses/post")
    assert denied.status_code == 401
    assert poster.posted == []

    accepted = await client.post("/jobs/responses/post", headers={"X-Job-Token": "s3cret"})
    assert accepted.status_code == 202
    assert poster.posted == [("r1", "Thank you!")]


@pytest.mark.asyncio
async def test_poll_and_retry_jobs_are_accepted(client):
    assert (await client.post("/jobs/reviews/poll")).status_code == 202
    assert (await client.post("/jobs/notifications/retry")).status_code == 202


@pytest.mark.asyncio
async def test_healthz(client):
    resp = await client.get("/healthz")
    assert resp.json() == {"status": "ok"}
