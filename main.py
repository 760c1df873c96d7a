import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from app.errors import SignatureInvalid
from app.services.ingestion import ingest_payload
from app.utils.signature import SIGNATURE_HEADER, verify_signature
from app.wiring import build_pipeline
from app.workers.escalation import CelerySchedulerBackend, CeleryTaskQueue
from config import settings
from db.db import create_engine, make_session_maker

logging.basicConfig(level=settings.LOG_LEVEL)
_LOGGER = logging.getLogger(__name__)

# Build the pipeline on startup and close the engine on shutdown

@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_engine(settings.DATABASE_URL)
    app.state.engine = engine
    pipeline = build_pipeline(
        make_session_maker(engine), tasks=CeleryTaskQueue(), backend=CelerySchedulerBackend()
    )
    app.state.ingestor = pipeline.ingestor
    # Tables are managed via Alembic migrations
    try:
        yield
    finally:
        await engine.dispose()


app = FastAPI(lifespan=lifespan)

# --------------------------------------------
# Endpoints
# --------------------------------------------
@app.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return PlainTextResponse("OK")


@app.get("/v1/webhooks/whatsapp/status", response_class=PlainTextResponse)
async def verify_subscription(
    mode: str = Query(None, alias="hub.mode"),
    token: str = Query(None, alias="hub.verify_token"),
    challenge: str = Query("", alias="hub.challenge"),
):
    if mode == "subscribe" and settings.WHATSAPP_VERIFY_TOKEN and token == settings.WHATSAPP_VERIFY_TOKEN:
        return PlainTextResponse(challenge)
    raise HTTPException(status.HTTP_403_FORBIDDEN, "Verification failed")


@app.post("/v1/webhooks/whatsapp/status")
async def status_webhook(request: Request):
    raw_body = await request.body()
    try:
        verify_signature(settings.WHATSAPP_APP_SECRET, raw_body, request.headers.get(SIGNATURE_HEADER))
    except SignatureInvalid as exc:
        _LOGGER.warning("[Webhook] Rejected status callback: %s", exc)
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Malformed JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Expected a JSON object")

    # Errors propagate as 500 so the gateway redelivers; ingestion is idempotent.
    counts = await ingest_payload(request.app.state.ingestor, payload)
    _LOGGER.info("[Webhook] Status callback processed: %s", counts)
    return {"status": "success", "results": counts}
