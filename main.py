import hmac
import logging
from xml.sax.saxutils import escape

import telnyx
from fastapi import BackgroundTasks, Depends, FastAPI, Form, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response

import db
from app.services.container import Services, build_services
from app.services.errors import ConfigurationError, NotificationSendError
from app.utils.logger import configure_logging
from config import settings

_LOGGER = logging.getLogger(__name__)

# Configure telnyx public key
if settings.TELNYX_PUBLIC_KEY:
    telnyx.public_key = settings.TELNYX_PUBLIC_KEY

app = FastAPI()

_services: Services | None = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


@app.on_event("startup")
async def startup_event():
    configure_logging()
    if settings.is_production and not settings.TELNYX_PUBLIC_KEY:
        raise ConfigurationError("TELNYX_PUBLIC_KEY is required in production")
    # Tables are managed via Alembic migrations


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


# --------------------------------------------
# TeXML helpers
# --------------------------------------------
def texml(message: str | None = None) -> Response:
    if message:
        body = f'<?xml version="1.0" encoding="UTF-8"?><Response><Message>{escape(message)}</Message></Response>'
    else:
        body = '<?xml version="1.0" encoding="UTF-8"?><Response/>'
    return Response(content=body, media_type="application/xml")


# --------------------------------------------
# SMS webhooks (form-encoded, TeXML replies)
# --------------------------------------------
@app.post("/webhooks/sms/inbound")
async def sms_inbound(
    From: str | None = Form(None),
    Body: str | None = Form(None),
    MessageSid: str | None = Form(None),
    services: Services = Depends(get_services),
):
    if not From or not (Body or "").strip():
        return texml("Invalid message received.")

    result = await services.conversation.handle_inbound(From, Body, MessageSid)
    if result.duplicate:
        return texml()
    return texml(result.reply)


@app.post("/webhooks/sms/status")
async def sms_status(
    MessageSid: str | None = Form(None),
    MessageStatus: str | None = Form(None),
    services: Services = Depends(get_services),
):
    if MessageSid and MessageStatus:
        try:
            async with services.sessions() as s, s.begin():
                updated = await db.update_delivery_status(s, MessageSid, MessageStatus)
            if not updated:
                _LOGGER.info("Status %s for unknown message %s", MessageStatus, MessageSid)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Failed to record status for %s", MessageSid)
    return texml()


# --------------------------------------------
# Telnyx JSON webhook
# --------------------------------------------
async def reply_via_sms(services: Services, phone: str, body: str):
    try:
        await services.dispatcher.send_text(phone, body)
    except NotificationSendError as exc:
        _LOGGER.error("Reply SMS to %s failed: %s", phone, exc)


def _as_dict(obj):
    # TelnyxObject -> dict if needed
    return obj.to_dict() if hasattr(obj, "to_dict") else (obj or {})


@app.post("/v1/sms/telnyx", response_class=PlainTextResponse)
async def telnyx_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    raw_body = await request.body()
    sig = request.headers.get("telnyx-signature-ed25519")
    ts = request.headers.get("telnyx-timestamp")

    try:
        if settings.TELNYX_PUBLIC_KEY:
            event = telnyx.Webhook.construct_event(raw_body.decode(), sig, ts)
            data = _as_dict(event.data)
        else:  # dev mode: skip signature verification
            data = (await request.json())["data"]
    except Exception:  # noqa: BLE001
        raise HTTPException(400, "Bad signature")

    event_type = data.get("event_type")
    payload = _as_dict(data.get("payload"))

    if event_type == "message.received":
        sender = _as_dict(payload.get("from") or payload.get("from_"))
        from_num = sender.get("phone_number")
        text = (payload.get("text") or "").strip()
        if not from_num or not text:
            return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)
        result = await services.conversation.handle_inbound(
            from_num, text, payload.get("id")
        )
        if result.reply and not result.duplicate:
            background.add_task(reply_via_sms, services, from_num, result.reply)
        return PlainTextResponse("OK")

    if event_type in ("message.sent", "message.finalized"):
        recipients = payload.get("to") or []
        delivery = _as_dict(recipients[0]).get("status") if recipients else None
        if payload.get("id") and delivery:
            async with services.sessions() as s, s.begin():
                await db.update_delivery_status(s, payload["id"], delivery)
        return PlainTextResponse("OK")

    return PlainTextResponse("IGNORED", status_code=status.HTTP_200_OK)


# --------------------------------------------
# Job triggers (external cron)
# --------------------------------------------
def require_job_token(x_job_token: str | None = Header(None)):
    if settings.JOBS_TOKEN and not hmac.compare_digest(x_job_token or "", settings.JOBS_TOKEN):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid job token")


async def _run_job(name: str, job):
    try:
        stats = await job()
        _LOGGER.info("Job %s finished: %s", name, stats)
    except Exception:  # noqa: BLE001
        _LOGGER.exception("Job %s failed", name)


@app.post("/jobs/reviews/poll", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_job_token)])
async def poll_reviews(background: BackgroundTasks, services: Services = Depends(get_services)):
    background.add_task(_run_job, "poll_reviews", services.ingestion.run_once)
    return {"accepted": True, "job": "poll_reviews"}


@app.post("/jobs/responses/post", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_job_token)])
async def post_responses(background: BackgroundTasks, services: Services = Depends(get_services)):
    background.add_task(_run_job, "post_responses", services.poster.run_once)
    return {"accepted": True, "job": "post_responses"}


@app.post("/jobs/notifications/retry", status_code=status.HTTP_202_ACCEPTED, dependencies=[Depends(require_job_token)])
async def retry_notifications(background: BackgroundTasks, services: Services = Depends(get_services)):
    background.add_task(_run_job, "retry_notifications", services.retry.run_once)
    return {"accepted": True, "job": "retry_notifications"}


@app.get("/healthz")
async def healthz():
    return JSONResponse({"status": "ok"})
