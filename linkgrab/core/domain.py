# linkgrab/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional


# ============================================================================
# MEDIA KIND
# ============================================================================

class MediaKind(str, Enum):
    """What the user asked for. Selects tool flags, MIME type and cache namespace."""
    AUDIO = "audio"
    VIDEO = "video"

    @property
    def mime_type(self) -> str:
        return "audio/mpeg" if self is MediaKind.AUDIO else "video/mpeg"

    @property
    def extension(self) -> str:
        return "mp3" if self is MediaKind.AUDIO else "mp4"

    @property
    def cache_namespace(self) -> str:
        return "tracks" if self is MediaKind.AUDIO else "videos"


# ============================================================================
# ERRORS
# ============================================================================

class ErrorKind(str, Enum):
    INVALID_LINK = "invalid_link"
    NOT_FOUND = "not_found"
    IS_STREAM = "is_stream"
    TOO_LARGE = "too_large"
    METADATA_FETCH_FAILED = "metadata_fetch_failed"
    DATA_FETCH_FAILED = "data_fetch_failed"


class AcquisitionError(Exception):
    """
    Failure to resolve or acquire a media asset.

    Attributes:
        kind: ErrorKind, mapped 1:1 to a user-facing message.
        detail: Operator-facing detail (never shown to users).
    """

    def __init__(self, kind: ErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


# ============================================================================
# SOURCE DESCRIPTOR
# ============================================================================

class SourceSite(str, Enum):
    """Sites the resolver knows. New sites are new members + a resolver rule."""
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    VK = "vk"
    TWITTER = "twitter"
    X = "x"


@dataclass(frozen=True)
class SourceDescriptor:
    """Canonical long-form link to one retrievable asset."""
    uri: str
    site: SourceSite

    def __str__(self) -> str:
        return self.uri


# ============================================================================
# METADATA / HANDLE
# ============================================================================

@dataclass(frozen=True)
class MediaMetadata:
    """The subset of the extraction tool's JSON the pipeline needs."""
    id: str
    format_id: str
    title: str
    filesize: Optional[int] = None
    is_live: bool = False


@dataclass
class MediaHandle:
    """
    Result of a successful acquisition.

    The body is a single-use async iterator of chunks. ``size`` is either the
    size reported by the tool up front, or the number of bytes buffered.
    Whoever holds the handle must call ``aclose()`` (idempotent) once done,
    which terminates the backing process if it is still running.

    A failure raised by the body while it is being consumed is kept in
    ``error``, so the caller can tell a broken source from a broken sink
    even when the consumer wraps the exception in its own type.
    """
    chunks: AsyncIterator[bytes]
    size: int
    filename: str
    kind: MediaKind
    on_close: Optional[Callable[[], Awaitable[None]]] = None
    error: Optional[AcquisitionError] = field(default=None, init=False)
    _body: Optional[AsyncIterator[bytes]] = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def mime_type(self) -> str:
        return self.kind.mime_type

    def take_filename(self) -> str:
        """Move the filename out of the handle (leaves an empty string)."""
        name, self.filename = self.filename, ""
        return name

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._body is not None:
            raise RuntimeError("media body can only be consumed once")
        self._body = self._record_errors()
        return self._body

    async def _record_errors(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.chunks:
                yield chunk
        except AcquisitionError as exc:
            self.error = exc
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for body in (self._body, self.chunks):
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                await aclose()
        if self.on_close is not None:
            await self.on_close()

    async def read_all(self) -> bytes:
        """Drain the body into memory. Mostly useful in tests and small files."""
        try:
            return b"".join([chunk async for chunk in self])
        finally:
            await self.aclose()


# ============================================================================
# ORCHESTRATION RESULTS
# ============================================================================

@dataclass
class Fresh:
    """Cache miss (or cache bypassed): bytes must be transferred."""
    uri: str
    media: MediaHandle


@dataclass(frozen=True)
class Reused:
    """Cache hit: the asset can be re-delivered by reference."""
    uri: str
    destination_id: str


AcquireOutcome = Fresh | Reused


@dataclass(frozen=True)
class DeliveryResult:
    """What happened to one bot delivery request."""
    status: str  # "uploaded" | "reused" | "failed" | "rejected"
    destination_id: Optional[str] = None
    error: Optional[ErrorKind] = None
    uri: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in ("uploaded", "reused")
