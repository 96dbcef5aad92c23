"""
FastAPI Application — checkout webhooks in, WhatsApp conversations out.

Provides:
- POST /webhook                     checkout-platform events (HMAC-SHA1 signed)
- POST /webhooks/whatsapp           inbound chat messages from the gateway (bearer API key)
- POST /webhooks/whatsapp/connection  gateway lifecycle (QR, open, close; bearer API key)
- Status and listing endpoints for operators
- Follow-up scheduler and snapshot flushing, run inside the app lifespan
"""
from __future__ import annotations

import json
import time
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.security import SignatureError, verify_bearer, verify_signature
from channels.dispatcher import DeliveryDispatcher
from channels.whatsapp_adapter import WhatsAppTransport
from config.logging_config import configure_logging
from config.settings import Settings, get_settings
from core.engine import CompletionEngine
from core.events import EventClassifier
from core.intent import IntentClassifier
from core.orchestrator import Orchestrator
from core.rate_limiter import SlidingWindowRateLimiter
from core.router import ResponseRouter
from core.scheduler import FollowUpScheduler
from database.store_base import BaseRecordStore
from database.store_factory import create_store

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    settings: Settings
    store: BaseRecordStore
    transport: WhatsAppTransport
    dispatcher: DeliveryDispatcher
    router: ResponseRouter
    scheduler: FollowUpScheduler
    rate_limiter: SlidingWindowRateLimiter
    orchestrator: Orchestrator
    started_at: float


services: Optional[Services] = None


def build_services(settings: Settings) -> Services:
    cc = settings.whatsapp.country_code
    store = create_store({
        "store_backend": settings.database.store_backend,
        "store_file_path": settings.database.store_file_path,
        "snapshot_interval_seconds": settings.database.snapshot_interval_seconds,
    }, country_code=cc)

    transport = WhatsAppTransport()
    dispatcher = DeliveryDispatcher(
        transport, pause_seconds=settings.whatsapp.send_pause_seconds, country_code=cc,
    )
    rate_limiter = SlidingWindowRateLimiter(
        limit=settings.rate_limit.limit,
        window_seconds=settings.rate_limit.window_seconds,
    )
    router = ResponseRouter(
        classifier=IntentClassifier.from_config(settings.intents),
        engine=CompletionEngine(settings.llm),
        products=settings.products,
        links=settings.links,
        system_prompt=settings.llm.system_prompt,
        history_turns=settings.llm.history_turns,
        max_tokens=settings.llm.max_tokens,
    )
    scheduler = FollowUpScheduler(
        store,
        dispatcher,
        delay_seconds=settings.followup.delay_seconds,
        rate_limiter=rate_limiter if settings.followup.respect_rate_limit else None,
        country_code=cc,
    )
    orchestrator = Orchestrator(
        store=store,
        dispatcher=dispatcher,
        router=router,
        scheduler=scheduler,
        rate_limiter=rate_limiter,
        events=EventClassifier(default_event=settings.webhook.default_event),
        country_code=cc,
    )
    return Services(
        settings=settings,
        store=store,
        transport=transport,
        dispatcher=dispatcher,
        router=router,
        scheduler=scheduler,
        rate_limiter=rate_limiter,
        orchestrator=orchestrator,
        started_at=time.monotonic(),
    )


def _services() -> Services:
    if services is None:
        raise HTTPException(503, "Service not started")
    return services


def _authenticate_gateway(request: Request, svc: Services) -> None:
    try:
        verify_bearer(request.headers.get("Authorization", ""), svc.settings.whatsapp.api_key)
    except SignatureError as e:
        logger.warning("gateway_callback_rejected", path=request.url.path, reason=str(e))
        raise HTTPException(403, "Invalid gateway credential")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global services
    settings = get_settings()
    configure_logging(settings.debug)

    services = build_services(settings)
    await services.store.start()
    await services.transport.initialize({
        "gateway_url": settings.whatsapp.gateway_url,
        "api_key": settings.whatsapp.api_key,
        "timeout_seconds": settings.whatsapp.timeout_seconds,
    })
    await services.scheduler.rearm()
    await services.scheduler.start()
    if not settings.whatsapp.api_key:
        logger.warning("gateway_callbacks_refused", reason="whatsapp.api_key not set")

    logger.info("checkout_concierge_started",
                app=settings.app_name,
                store=type(services.store).__name__,
                whatsapp_mock=services.transport.mock_mode)
    yield

    await services.scheduler.stop()
    await services.transport.shutdown()
    await services.store.close()
    logger.info("checkout_concierge_stopped")
    services = None


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="CheckoutConcierge API",
    description="Checkout webhooks driving WhatsApp customer conversations",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ══════════════════════════════════════════════════════════════
#  HEALTH & STATUS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    svc = _services()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "whatsapp_connected": svc.transport.is_connected,
    }


@app.get("/status")
async def status():
    svc = _services()
    return {
        "whatsapp": await svc.transport.health_check(),
        "store": svc.store.stats(),
        "pending_followups": len(await svc.store.list_pending_followups()),
        "rate_limited_identities": svc.rate_limiter.tracked_identities(),
        "uptime_seconds": round(time.monotonic() - svc.started_at, 1),
    }


@app.get("/whatsapp/qr")
async def whatsapp_qr():
    """Current pairing code, if the gateway issued one. Render it as a QR client-side."""
    svc = _services()
    if not svc.transport.qr_code:
        raise HTTPException(404, "No QR code available")
    return {"qr": svc.transport.qr_code, "state": svc.transport.state.value}


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — Checkout platform
# ══════════════════════════════════════════════════════════════

@app.head("/webhook")
async def webhook_probe():
    return Response(status_code=200)


@app.post("/webhook")
async def checkout_webhook(request: Request, signature: str = Query("")):
    svc = _services()
    raw_body = await request.body()

    try:
        verify_signature(raw_body, signature, svc.settings.webhook.secret)
    except SignatureError as e:
        logger.warning("webhook_signature_invalid", reason=str(e))
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("webhook_invalid_json", size=len(raw_body))
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    try:
        result = await svc.orchestrator.handle_webhook_event(payload)
    except Exception as e:
        logger.exception("webhook_processing_failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Internal error"})

    return {
        "status": "ok",
        "event": result["event"],
        "whatsapp_connected": svc.transport.is_connected,
    }


# ══════════════════════════════════════════════════════════════
#  WEBHOOKS — WhatsApp gateway
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/whatsapp")
async def whatsapp_webhook(request: Request):
    """Receive inbound messages. Accepts one message or {"messages": [...]}."""
    svc = _services()
    _authenticate_gateway(request, svc)
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(400, "Invalid JSON")

    if not isinstance(body, dict):
        raise HTTPException(400, "Expected a JSON object")
    events = body.get("messages") if isinstance(body.get("messages"), list) else [body]

    results = []
    for event in events:
        parsed = svc.transport.parse_inbound(event) if isinstance(event, dict) else None
        if parsed is None:
            continue
        results.append(await svc.orchestrator.handle_inbound_message(
            parsed["sender_address"], parsed["content"],
        ))
    return {"status": "ok", "processed": len(results), "results": results}


@app.post("/webhooks/whatsapp/connection")
async def whatsapp_connection(request: Request, update: dict[str, Any]):
    svc = _services()
    _authenticate_gateway(request, svc)
    should_reconnect = svc.transport.on_connection_update(update)
    return {
        "state": svc.transport.state.value,
        "connected": svc.transport.is_connected,
        "should_reconnect": should_reconnect,
    }


# ══════════════════════════════════════════════════════════════
#  RECORDS
# ══════════════════════════════════════════════════════════════

@app.get("/customers")
async def list_customers():
    return [c.model_dump(mode="json") for c in await _services().store.list_customers()]


@app.get("/customers/{email}")
async def get_customer(email: str):
    customer = await _services().store.get_customer(email.lower())
    if not customer:
        raise HTTPException(404, "Customer not found")
    return customer.model_dump(mode="json")


@app.get("/conversations")
async def list_conversations():
    return [c.model_dump(mode="json") for c in await _services().store.list_conversations()]


@app.get("/followups")
async def list_followups():
    return [p.model_dump(mode="json") for p in await _services().store.list_pending_followups()]
