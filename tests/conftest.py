# tests/conftest.py
"""Pytest configuration and fixtures"""
import asyncio
import json
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from linkgrab.core.domain import MediaHandle, MediaKind  # noqa: E402
from linkgrab.core.ports import ProcessResult  # noqa: E402


# ============================================================================
# yt-dlp process fakes
# ============================================================================

class FakeProcess:
    """Stand-in for a spawned yt-dlp process streaming stdout."""

    def __init__(self, chunks: list[bytes] | None = None, returncode: int = 0, read_error: Exception | None = None):
        self._data = b"".join(chunks or [])
        self.returncode = returncode
        self.read_error = read_error
        self.terminated = 0
        self.reads = 0

    async def read(self, n: int) -> bytes:
        self.reads += 1
        if self.read_error is not None:
            raise self.read_error
        chunk, self._data = self._data[:n], self._data[n:]
        return chunk

    async def wait(self) -> int:
        return self.returncode

    async def terminate(self) -> None:
        self.terminated += 1


class FakeRunner:
    """Records argv and replays canned metadata / data processes."""

    def __init__(
        self,
        metadata: dict | bytes | None = None,
        *,
        metadata_returncode: int = 0,
        stderr: bytes = b"",
        process: FakeProcess | None = None,
        spawn_error: Exception | None = None,
    ):
        if isinstance(metadata, dict):
            metadata = json.dumps(metadata).encode()
        self.metadata = metadata or b""
        self.metadata_returncode = metadata_returncode
        self.stderr = stderr
        self.process = process or FakeProcess([b"media-bytes"])
        self.spawn_error = spawn_error
        self.run_calls: list[list[str]] = []
        self.spawn_calls: list[list[str]] = []

    async def run(self, argv):
        self.run_calls.append(list(argv))
        return ProcessResult(self.metadata_returncode, self.metadata, self.stderr)

    async def spawn(self, argv):
        self.spawn_calls.append(list(argv))
        if self.spawn_error is not None:
            raise self.spawn_error
        return self.process


def make_metadata(**overrides) -> dict:
    data = {
        "id": "dQw4w9WgXcQ",
        "format_id": "18",
        "title": "Never Gonna Give You Up",
        "filesize": 1024,
        "is_live": False,
    }
    data.update(overrides)
    return data


# ============================================================================
# Delivery fakes
# ============================================================================

class FakeTransport:
    """Records every DeliveryTransport call in order."""

    def __init__(self, upload_id: str = "file-1", upload_error: Exception | None = None):
        self.calls: list[tuple] = []
        self.upload_id = upload_id
        self.upload_error = upload_error
        self.uploaded: list[bytes] = []
        self._next_token = 100

    async def send_notice(self, text):
        self.calls.append(("notice", text))

    async def show_progress(self, kind):
        self._next_token += 1
        self.calls.append(("progress", kind))
        return self._next_token

    async def replace_progress(self, token, text):
        self.calls.append(("replace", token, text))

    async def clear_progress(self, token):
        self.calls.append(("clear", token))

    async def upload(self, media):
        self.calls.append(("upload", media.kind))
        if self.upload_error is not None:
            raise self.upload_error
        self.uploaded.append(b"".join([chunk async for chunk in media]))
        return self.upload_id

    async def send_by_reference(self, destination_id, kind):
        self.calls.append(("reference", destination_id, kind))

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeSource:
    """MediaSource returning in-memory handles (or raising)."""

    def __init__(
        self,
        payload: bytes = b"media-bytes",
        error: Exception | None = None,
        delay: float = 0,
        title: str = "title",
    ):
        self.payload = payload
        self.title = title
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, MediaKind]] = []
        self.closed = 0

    async def acquire(self, descriptor, kind):
        self.calls.append((str(descriptor), kind))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

        async def chunks():
            yield self.payload

        async def on_close():
            self.closed += 1

        return MediaHandle(
            chunks=chunks(),
            size=len(self.payload),
            filename=f"{self.title}.{kind.extension}",
            kind=kind,
            on_close=on_close,
        )


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def fake_transport_factory():
    return FakeTransport


@pytest.fixture
def fake_source_factory():
    return FakeSource


@pytest.fixture
def fake_runner_factory():
    return FakeRunner


@pytest.fixture
def fake_process_factory():
    return FakeProcess


@pytest.fixture
def metadata_factory():
    return make_metadata


@pytest.fixture
def reset_metrics():
    from linkgrab.infra.metrics import get_metrics_collector
    get_metrics_collector().reset()
    yield get_metrics_collector()
    get_metrics_collector().reset()


@pytest.fixture
def youtube_link():
    return "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
