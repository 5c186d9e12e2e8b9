# linkgrab/core/orchestrator.py
import asyncio
from typing import Any, Optional

from linkgrab.core.domain import (
    AcquireOutcome,
    AcquisitionError,
    DeliveryResult,
    ErrorKind,
    Fresh,
    MediaKind,
    Reused,
)
from linkgrab.core.ports import DeliveryTransport, IdCacheStore, MediaSource
from linkgrab.core.resolver import resolve
from linkgrab.core.texts import error_text, get_text
from linkgrab.infra.logging_config import LogContext, get_logger
from linkgrab.infra.metrics import AppMetrics

logger = get_logger(__name__)


class DeliveryOrchestrator:
    """
    Application service for one media request.

    Workflow: resolve link -> cache lookup -> (hit: reuse id | miss: acquire)
    -> upload -> record id -> cleanup.

    The cache is optional: the website path streams bytes straight to the
    requester and never gets a reusable destination id.
    """

    def __init__(
        self,
        *,
        source: MediaSource,
        cache: Optional[IdCacheStore] = None,
    ) -> None:
        self.source = source
        self.cache = cache

    async def acquire_or_reuse(
        self,
        raw_link: str,
        kind: MediaKind,
        *,
        use_cache: bool = True,
    ) -> AcquireOutcome:
        """
        Resolve *raw_link* and either reuse a cached destination id or acquire the media.

        Returns:
            ``Reused`` on a cache hit, otherwise ``Fresh`` carrying a media
            handle the caller owns (and must ``aclose()``).

        Raises:
            AcquisitionError: resolution or acquisition failed.
        """
        descriptor = resolve(raw_link or "")
        uri = str(descriptor)

        if use_cache and self.cache is not None:
            cached_id = await self.cache.get(uri, kind)
            if cached_id is not None:
                AppMetrics.cache_hit(kind.value)
                return Reused(uri=uri, destination_id=cached_id)
            AppMetrics.cache_miss(kind.value)

        media = await self.source.acquire(descriptor, kind)
        return Fresh(uri=uri, media=media)

    async def deliver(
        self,
        raw_link: str,
        kind: MediaKind,
        transport: DeliveryTransport,
        *,
        chat_id: str | int | None = None,
    ) -> DeliveryResult:
        """
        Run the full delivery for a chat request.

        Resolution/acquisition failures, including a source that breaks while
        the body is being uploaded, are reported to the user and returned as a
        ``failed`` result. Transport failures propagate (the progress
        indicator is left in place).
        """
        log_ctx = LogContext(logger, chat_id=chat_id, media_kind=kind.value)
        link = (raw_link or "").strip()

        if not link:
            await transport.send_notice(get_text("no_link", kind))
            AppMetrics.delivery("bot", "rejected")
            return DeliveryResult(status="rejected", error=ErrorKind.INVALID_LINK)

        progress = await transport.show_progress(kind)

        try:
            outcome = await self.acquire_or_reuse(link, kind)
        except AcquisitionError as exc:
            log_ctx.info(f"Request failed before upload: {exc}")
            await self._report_failure(transport, progress, exc.kind, kind, log_ctx)
            AppMetrics.delivery("bot", "failed")
            return DeliveryResult(status="failed", error=exc.kind)

        if isinstance(outcome, Reused):
            await asyncio.gather(
                transport.send_by_reference(outcome.destination_id, kind),
                self._cleanup(transport, progress, log_ctx),
            )
            log_ctx.info(f"Re-delivered cached {kind.value} for {outcome.uri}")
            AppMetrics.delivery("bot", "reused")
            return DeliveryResult(
                status="reused", destination_id=outcome.destination_id, uri=outcome.uri
            )

        media = outcome.media
        try:
            with AppMetrics.track_upload_time(kind.value):
                destination_id = await transport.upload(media)
        except Exception as exc:
            # The transport may wrap a body failure in its own error type
            if media.error is None:
                raise
            log_ctx.warning(f"Source failed during upload of {outcome.uri}: {media.error} ({exc!r})")
            await self._report_failure(transport, progress, media.error.kind, kind, log_ctx)
            AppMetrics.delivery("bot", "failed")
            return DeliveryResult(status="failed", error=media.error.kind, uri=outcome.uri)
        finally:
            await media.aclose()

        if self.cache is not None:
            await self.cache.set(outcome.uri, kind, destination_id)
        await self._cleanup(transport, progress, log_ctx)

        log_ctx.info(f"Uploaded {kind.value} for {outcome.uri}")
        AppMetrics.delivery("bot", "uploaded")
        return DeliveryResult(status="uploaded", destination_id=destination_id, uri=outcome.uri)

    @staticmethod
    async def _cleanup(transport: DeliveryTransport, progress: Any, log_ctx: LogContext) -> None:
        try:
            await transport.clear_progress(progress)
        except Exception as exc:
            log_ctx.warning(f"Could not remove progress indicator: {exc}")

    @staticmethod
    async def _report_failure(
        transport: DeliveryTransport,
        progress: Any,
        error: ErrorKind,
        kind: MediaKind,
        log_ctx: LogContext,
    ) -> None:
        try:
            await transport.replace_progress(progress, error_text(error, kind))
        except Exception as exc:
            log_ctx.warning(f"Could not report {error.value} to the user: {exc}")
