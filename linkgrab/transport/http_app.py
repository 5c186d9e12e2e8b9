# linkgrab/transport/http_app.py
"""
HTTP application: website downloads, Telegram webhook and the bot lifecycle.

Layers:
1. Public: static website, /video and /audio direct downloads, /health
2. Telegram: webhook endpoint (secret token checked when configured)
3. Protected: /metrics (METRICS_TOKEN)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from linkgrab.config import settings, validate_or_warn
from linkgrab.core.domain import MediaKind
from linkgrab.core.orchestrator import DeliveryOrchestrator
from linkgrab.infra.http_client import close_all_sessions
from linkgrab.infra.id_cache import CacheLoadError, IdCache, PeriodicFlusher
from linkgrab.infra.log_relay import OwnerLogRelay
from linkgrab.infra.logging_config import setup_logging, get_logger
from linkgrab.infra.media_source import YtDlpMediaSource
from linkgrab.infra.metrics import get_metrics_collector
from linkgrab.infra.process_runner import AsyncioProcessRunner
from linkgrab.infra.tasks import drain_background_tasks
from linkgrab.infra.usage_stats import UsageStats
from linkgrab.transport.bot import Bot
from linkgrab.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
    VisitorStatsMiddleware,
)
from linkgrab.transport.security import (
    require_metrics_auth,
    SecurityHeaders,
    sanitize_error_message,
)
from linkgrab.transport.telegram_client import TelegramApiError, TelegramClient
from linkgrab.transport.telegram_polling import TelegramPoller
from linkgrab.transport.telegram_webhook import telegram_webhook_handler
from linkgrab.transport.website import serve_media

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# WIRING
# ============================================================================

def build_media_source() -> YtDlpMediaSource:
    dump_dir = settings.cache_dir if settings.metadata_dump_enabled and not settings.is_production else None
    return YtDlpMediaSource(
        AsyncioProcessRunner(),
        binary=settings.ytdlp_binary,
        max_filesize=settings.max_filesize_bytes,
        buffered_limit=settings.buffered_download_limit_bytes,
        chunk_size=settings.download_chunk_size,
        max_concurrent=settings.max_concurrent_acquisitions,
        metadata_dump_dir=dump_dir,
    )


async def _start_bot(bot: Bot) -> TelegramPoller | None:
    """Start the bot and its update intake. Returns the poller in polling mode."""
    await bot.start()

    if settings.telegram_mode == "polling":
        poller = TelegramPoller(bot)
        await poller.start()
        return poller

    if not settings.webhook_url:
        logger.error("telegram_mode=webhook but public_url is not set: no updates will arrive")
        return None

    await bot.client.set_webhook(settings.webhook_url, secret_token=settings.telegram_webhook_secret)
    logger.info(f"Telegram webhook registered: {settings.webhook_url}")
    return None


async def _stop_bot(bot: Bot, poller: TelegramPoller | None) -> None:
    if poller is not None:
        await poller.stop()
    try:
        if settings.telegram_mode == "webhook":
            await bot.client.delete_webhook()
        await bot.stop()
    except TelegramApiError as exc:
        logger.warning(f"Telegram shutdown notice failed: {exc}")


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}, telegram_mode={settings.telegram_mode}")

    validate_or_warn(settings)

    # A broken cache file is fatal: running without it would re-upload everything
    cache = IdCache(settings.cache_path)
    try:
        entries = cache.load()
    except CacheLoadError:
        logger.critical(f"Cannot load ID cache from {settings.cache_path}", exc_info=True)
        raise
    logger.info(f"ID cache loaded: {entries} entr{'y' if entries == 1 else 'ies'}")

    orchestrator = DeliveryOrchestrator(source=build_media_source(), cache=cache)
    usage_stats = UsageStats()

    fastapi_app.state.cache = cache
    fastapi_app.state.orchestrator = orchestrator
    fastapi_app.state.usage_stats = usage_stats
    fastapi_app.state.bot = None

    log_relay: OwnerLogRelay | None = None
    poller: TelegramPoller | None = None
    bot: Bot | None = None

    if settings.bot_enabled:
        if settings.owner_telegram_id is not None:
            log_relay = OwnerLogRelay(
                capacity=settings.owner_log_buffer_size,
                level=settings.owner_log_level.upper(),
            )
            logging.getLogger().addHandler(log_relay)

        bot = Bot(
            TelegramClient(settings.telegram_bot_token, settings.telegram_api_base),
            orchestrator,
            stats=usage_stats,
            owner_id=settings.owner_telegram_id,
            log_relay=log_relay,
        )
        poller = await _start_bot(bot)
        fastapi_app.state.bot = bot
    else:
        logger.info("Telegram bot disabled (no telegram_bot_token)")

    flusher: PeriodicFlusher | None = None
    if settings.cache_flush_interval_seconds > 0:
        flusher = PeriodicFlusher(cache, settings.cache_flush_interval_seconds)
        await flusher.start()

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if poller is not None:
        await poller.stop()
        poller = None

    # Let in-flight deliveries record their ids before the final flush
    await drain_background_tasks()

    if flusher is not None:
        await flusher.stop()

    try:
        await cache.flush()
        logger.info(f"ID cache flushed: {len(cache)} entries")
    except OSError as exc:
        logger.error(f"Failed to flush ID cache to {settings.cache_path}: {exc}")

    if bot is not None:
        await _stop_bot(bot, poller)
        fastapi_app.state.bot = None

    if log_relay is not None:
        logging.getLogger().removeHandler(log_relay)

    await close_all_sessions()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="linkgrab",
    description="Video and audio downloads from links, via Telegram or the website",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )
else:
    # More permissive in dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    VisitorStatsMiddleware,
    exclude_paths=("/health", "/metrics", "/video", "/audio", settings.telegram_webhook_path),
)
app.add_middleware(ErrorHandlingMiddleware, webhook_path=settings.telegram_webhook_path)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    error_message = sanitize_error_message(exc, settings.is_production)

    return JSONResponse(
        status_code=500,
        content={"error": error_message},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@app.get("/video")
async def download_video(request: Request):
    return await serve_media(request, MediaKind.VIDEO)


@app.get("/audio")
async def download_audio(request: Request):
    return await serve_media(request, MediaKind.AUDIO)


# ============================================================================
# TELEGRAM
# ============================================================================

@app.post(settings.telegram_webhook_path, include_in_schema=False)
async def webhook_telegram(request: Request):
    return await telegram_webhook_handler(request)


# ============================================================================
# MONITORING
# ============================================================================

@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics(request: Request):
    """
    Metrics endpoint (METRICS_TOKEN).
    Counters/histograms plus usage stats and ID cache size.
    """
    payload = get_metrics_collector().get_metrics()
    stats: UsageStats | None = getattr(request.app.state, "usage_stats", None)
    if stats is not None:
        payload["usage"] = stats.summary()
    cache: IdCache | None = getattr(request.app.state, "cache", None)
    if cache is not None:
        payload["id_cache_entries"] = len(cache)
    return payload


# ============================================================================
# STATIC WEBSITE (mounted last, 404.html served for unknown paths)
# ============================================================================

if settings.static_dir.is_dir():
    app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="website")
else:
    logger.warning(f"Static directory {settings.static_dir} not found: website pages are not served")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "linkgrab.transport.http_app:app",
        host=settings.host,
        port=settings.port,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Disable in prod (use middleware logging)
        server_header=False,
        date_header=False,
    )
