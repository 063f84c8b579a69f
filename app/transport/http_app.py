# app/transport/http_app.py
"""
HTTP host for the automation engine.

Endpoints:
- POST /events          inbound event (webhook relay or simulator)
- POST /polling/start   session became active
- POST /polling/stop    session became inactive
- GET  /polling/status
- POST /session         session token changed (login, refresh, logout)
- GET  /health
- GET  /metrics
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.core.engine import AutomationEngine
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import setup_logging, get_logger
from app.infra.memory_store import build_store
from app.infra.metrics import get_metrics_collector
from app.infra.text_generator import get_text_generator
from app.transport.host_api import HostApiClient
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from app.transport.schemas import EventIn, EventOut, PollingStatusOut, SessionIn

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


def build_engine(cfg: Settings = settings) -> AutomationEngine:
    """Wire the engine from configuration."""
    host_api = None
    if cfg.host_api_enabled:
        host_api = HostApiClient(
            cfg.host_api_base_url,
            cfg.host_api_token,
            send_paths=cfg.channel_send_paths,
            timeout_seconds=cfg.host_api_timeout_seconds,
        )

    return AutomationEngine(
        store=build_store(cfg.flows_file, cfg.seed_demo_flow),
        sender=host_api,
        gate=host_api,
        inbox=host_api,
        text_generator=get_text_generator(),
        poll_interval_seconds=cfg.poll_interval_seconds,
        message_settle_ms=cfg.message_settle_ms,
        default_delay_ms=cfg.default_delay_ms,
        max_node_visits=cfg.max_node_visits_per_run,
        ai_max_reply_chars=cfg.ai_max_reply_chars,
    )


def get_engine(request: Request) -> AutomationEngine:
    return request.app.state.engine


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    logger.info(f"Starting automation host: env={settings.app_env}")

    # Tests may pre-install an engine
    if getattr(fastapi_app.state, "engine", None) is None:
        fastapi_app.state.engine = build_engine()
    engine: AutomationEngine = fastapi_app.state.engine

    if settings.polling_enabled_on_startup:
        engine.start_polling()

    yield

    engine.stop_polling()
    await engine.wait_idle()
    await close_all_sessions()
    logger.info("Automation host stopped")


app = FastAPI(title="Chat Automation Engine", lifespan=lifespan)

# Middleware order: last added runs first
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return get_metrics_collector().get_metrics()


@app.post("/events", response_model=EventOut)
async def trigger_event(body: EventIn, engine: AutomationEngine = Depends(get_engine)):
    task = await engine.trigger_event(
        body.type,
        subscriber_id=body.subscriber_id,
        username=body.username,
        target_account_id=body.target_account_id,
        text=body.text,
        profile_pic=body.profile_pic,
    )
    return EventOut(started=task is not None)


def _polling_status(engine: AutomationEngine) -> PollingStatusOut:
    return PollingStatusOut(
        is_polling=engine.is_polling,
        processed_messages=len(engine.processed_ids),
        paused_conversations=len(engine.pauses),
    )


@app.post("/polling/start", response_model=PollingStatusOut)
async def start_polling(engine: AutomationEngine = Depends(get_engine)):
    engine.start_polling()
    return _polling_status(engine)


@app.post("/polling/stop", response_model=PollingStatusOut)
async def stop_polling(engine: AutomationEngine = Depends(get_engine)):
    engine.stop_polling()
    return _polling_status(engine)


@app.get("/polling/status", response_model=PollingStatusOut)
async def polling_status(engine: AutomationEngine = Depends(get_engine)):
    return _polling_status(engine)


@app.post("/session", response_model=PollingStatusOut)
async def set_session(body: SessionIn, engine: AutomationEngine = Depends(get_engine)):
    engine.set_token(body.token)
    return _polling_status(engine)
