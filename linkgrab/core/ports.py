# linkgrab/core/ports.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from linkgrab.core.domain import MediaHandle, MediaKind, SourceDescriptor


# ============================================================================
# EXTERNAL PROCESSES
# ============================================================================

@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessStream(Protocol):
    """A running process whose stdout is consumed incrementally."""

    async def read(self, n: int) -> bytes:
        """Read up to *n* bytes of stdout; ``b""`` means EOF."""
        ...

    async def wait(self) -> int: ...

    async def terminate(self) -> None:
        """Stop the process if it's still running and reap it. Idempotent."""
        ...


class ProcessRunner(Protocol):
    async def run(self, argv: Sequence[str]) -> ProcessResult:
        """Run to completion, capturing stdout and stderr."""
        ...

    async def spawn(self, argv: Sequence[str]) -> ProcessStream:
        """Start with stdout piped and stderr discarded."""
        ...


# ============================================================================
# PIPELINE PORTS
# ============================================================================

class MediaSource(Protocol):
    async def acquire(self, descriptor: SourceDescriptor, kind: MediaKind) -> MediaHandle: ...


class IdCacheStore(Protocol):
    async def get(self, uri: str, kind: MediaKind) -> Optional[str]: ...
    async def set(self, uri: str, kind: MediaKind, destination_id: str) -> None: ...


class DeliveryTransport(Protocol):
    """
    One chat-bound delivery channel.

    The progress indicator is whatever the transport shows while a download
    is in flight (a "Downloading video..." message for Telegram).
    """

    async def send_notice(self, text: str) -> None: ...

    async def show_progress(self, kind: MediaKind) -> Any:
        """Create the progress indicator and return a token for it."""
        ...

    async def replace_progress(self, token: Any, text: str) -> None: ...

    async def clear_progress(self, token: Any) -> None: ...

    async def upload(self, media: MediaHandle) -> str:
        """Transfer the bytes and return the destination identifier."""
        ...

    async def send_by_reference(self, destination_id: str, kind: MediaKind) -> None: ...
