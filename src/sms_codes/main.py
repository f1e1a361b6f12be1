from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .config import ProviderConfig, Settings, get_settings
from .db import utcnow
from .logging_config import setup_logging
from .scheduler import PollingScheduler, RetentionSweeper
from .sms import normalize_sender_number
from .sources import build_message_source
from .storage import SmsStore, open_store

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {"twilio": "Twilio", "plivo": "Plivo", "gateway": "SMS gateway"}


def build_scheduler(settings: Settings, provider: ProviderConfig, store: SmsStore) -> PollingScheduler:
    """Wire a scheduler for the configured provider."""
    return PollingScheduler(
        store,
        provider.phone_number,
        lambda: build_message_source(provider, timeout=settings.fetch_timeout_seconds),
        provider_name=PROVIDER_LABELS.get(provider.provider, provider.provider),
        poll_interval=settings.poll_interval_seconds,
        lookback=timedelta(minutes=settings.effective_lookback_minutes),
        fetch_timeout=settings.fetch_timeout_seconds,
        fetch_limit=settings.fetch_limit,
    )


# --- Dependencies ---


def get_store(request: Request) -> SmsStore:
    return request.app.state.store


def get_scheduler(request: Request) -> PollingScheduler:
    return request.app.state.scheduler


def _error(message: str, status_code: int = 500) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


# --- Routes ---

router = APIRouter()


@router.get("/")
def index() -> JSONResponse:
    return JSONResponse(
        {
            "success": True,
            "message": "Simple SMS Polling Service",
            "version": __version__,
            "endpoints": [
                "GET /api/last-sms - Get last SMS message",
                "GET /api/last-code - Get last 2FA code",
                "GET /api/last-code-from/{from_number} - Get last code from specific sender",
                "GET /api/status - Service status",
                "POST /api/reconnect - Reconnect to the SMS provider",
            ],
        }
    )


@router.get("/api/last-sms")
def last_sms(
    store: SmsStore = Depends(get_store),
    scheduler: PollingScheduler = Depends(get_scheduler),
) -> JSONResponse:
    try:
        sms = store.get_last_message(scheduler.phone_number)
    except Exception:
        logger.exception("Error getting last SMS")
        return _error("Failed to get last SMS")

    if sms is None:
        return JSONResponse({"success": True, "data": None, "message": "No SMS messages found"})
    return JSONResponse({"success": True, "data": sms.to_dict()})


@router.get("/api/last-code")
def last_code(
    store: SmsStore = Depends(get_store),
    scheduler: PollingScheduler = Depends(get_scheduler),
) -> JSONResponse:
    """
    Return the newest unused code for the monitored number.

    The code is consumed: a second call will not return it again.
    """
    try:
        code = store.get_last_unused_code(scheduler.phone_number)
    except Exception:
        logger.exception("Error getting last code")
        return _error("Failed to get last code")

    if code is None:
        return JSONResponse({"success": True, "data": None, "message": "No codes found"})
    return JSONResponse({"success": True, "data": code.to_dict()})


@router.get("/api/last-code-from/{from_number}")
def last_code_from(
    from_number: str,
    store: SmsStore = Depends(get_store),
    scheduler: PollingScheduler = Depends(get_scheduler),
) -> JSONResponse:
    sender = normalize_sender_number(from_number)
    try:
        code = store.get_last_unused_code_from(scheduler.phone_number, sender)
    except Exception:
        logger.exception("Error getting last code from %s", sender)
        return _error("Failed to get last code from sender")

    if code is None:
        return JSONResponse(
            {"success": True, "data": None, "message": "No codes found from this sender"}
        )
    return JSONResponse({"success": True, "data": code.to_dict()})


@router.get("/api/status")
def status(scheduler: PollingScheduler = Depends(get_scheduler)) -> JSONResponse:
    return JSONResponse(
        {
            "success": True,
            "status": "running",
            "sms_service": scheduler.status().to_dict(),
            "timestamp": utcnow().isoformat(),
        }
    )


@router.post("/api/reconnect")
async def reconnect(scheduler: PollingScheduler = Depends(get_scheduler)) -> JSONResponse:
    """Operator action: resume polling after it stopped (e.g. on an auth failure)."""
    try:
        await scheduler.connect()
    except Exception:
        logger.exception("Reconnect failed")
        return _error("Failed to connect to SMS provider", status_code=503)
    return JSONResponse({"success": True, "sms_service": scheduler.status().to_dict()})


# --- App factory ---


def create_app(
    settings: Settings | None = None,
    *,
    store: SmsStore | None = None,
    scheduler: PollingScheduler | None = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the API.

    store and scheduler are created from settings at startup unless given.
    Startup fails on missing provider configuration or when the first
    connection to the provider fails.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        cfg = settings or get_settings()
        if configure_logging:
            setup_logging(cfg.log_level, cfg.log_format)

        if scheduler is None:
            # A ConfigError here stops startup before anything is created.
            provider = cfg.provider_config()
            sms_store = store if store is not None else open_store(cfg.database_url)
            sms_scheduler = build_scheduler(cfg, provider, sms_store)
        else:
            sms_store = store if store is not None else open_store(cfg.database_url)
            sms_scheduler = scheduler

        app.state.store = sms_store
        app.state.scheduler = sms_scheduler

        await sms_scheduler.connect()
        sweeper = RetentionSweeper(
            sms_store, cfg.retention_days, cfg.cleanup_interval_hours * 3600
        )
        sweeper.start()
        try:
            yield
        finally:
            logger.info("Shutting down SMS service...")
            await sweeper.aclose()
            await sms_scheduler.aclose()

    app = FastAPI(title="sms-codes", version=__version__, lifespan=lifespan)
    app.include_router(router)
    return app

