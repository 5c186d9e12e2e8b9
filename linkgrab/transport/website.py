# linkgrab/transport/website.py
"""
Direct download routes.

    GET /video?link=<url>
    GET /audio?link=<url>

The media is streamed straight from the extraction tool to the requester;
nothing is cached, because there is no destination id to reuse. Failures
are reported as short plain-text bodies with status 400.
"""
from __future__ import annotations

from typing import AsyncIterator
from urllib.parse import quote

from fastapi import Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from linkgrab.core.domain import AcquisitionError, MediaHandle, MediaKind, Reused
from linkgrab.core.orchestrator import DeliveryOrchestrator
from linkgrab.core.texts import web_error_text
from linkgrab.infra.logging_config import LogContext, get_logger
from linkgrab.infra.metrics import AppMetrics
from linkgrab.infra.usage_stats import UsageStats

logger = get_logger(__name__)

MISSING_LINK_TEXT = "missing link parameter"
HEADER_ERROR_TEXT = "server error"


def content_disposition(filename: str) -> str:
    """
    ``attachment`` header value. Names outside printable ASCII get an
    ASCII ``filename`` fallback plus the exact name as RFC 6266
    ``filename*`` (UTF-8, percent-encoded).

    Raises:
        UnicodeEncodeError: the name can't be encoded as UTF-8 (lone surrogates).
    """
    fallback = "".join(ch if " " <= ch < "\x7f" else "_" for ch in filename)
    escaped = fallback.replace("\\", "\\\\").replace('"', '\\"')
    value = f'attachment; filename="{escaped}"'
    if fallback != filename:
        value += f"; filename*=UTF-8''{quote(filename, safe='', encoding='utf-8', errors='strict')}"
    return value


async def _body(media: MediaHandle) -> AsyncIterator[bytes]:
    try:
        async for chunk in media:
            yield chunk
    finally:
        await media.aclose()


async def serve_media(request: Request, kind: MediaKind) -> Response:
    request_id = getattr(request.state, "request_id", None)
    link = request.query_params.get("link")
    log_ctx = LogContext(logger, request_id=request_id, media_kind=kind.value, source_uri=link)

    if not link:
        AppMetrics.delivery("web", "rejected")
        return PlainTextResponse(MISSING_LINK_TEXT, status_code=400)

    stats: UsageStats | None = getattr(request.app.state, "usage_stats", None)
    if stats is not None and request.client is not None:
        stats.record_downloader(kind.value, request.client.host)

    orchestrator: DeliveryOrchestrator = request.app.state.orchestrator
    try:
        outcome = await orchestrator.acquire_or_reuse(link, kind, use_cache=False)
    except AcquisitionError as exc:
        log_ctx.info(f"Direct download failed: {exc.kind.value} ({exc.detail})")
        AppMetrics.delivery("web", "failed")
        return PlainTextResponse(web_error_text(exc.kind), status_code=400)

    if isinstance(outcome, Reused):
        # use_cache=False never yields a cached id
        raise RuntimeError("direct download resolved to a cached destination id")

    media = outcome.media
    filename = media.take_filename()
    try:
        # No Content-Length: transcoding changes the size the tool reported
        headers = {"Content-Disposition": content_disposition(filename)}
        response = StreamingResponse(_body(media), media_type=kind.mime_type, headers=headers)
    except UnicodeEncodeError as exc:
        # Only names that are not valid text at all end up here
        log_ctx.error(f"Failed to build download headers: {exc}")
        await media.aclose()
        AppMetrics.delivery("web", "failed")
        return PlainTextResponse(HEADER_ERROR_TEXT, status_code=500)

    AppMetrics.delivery("web", "streamed")
    log_ctx.info(f"Direct download started: {outcome.uri} ({media.size} bytes)")
    return response
