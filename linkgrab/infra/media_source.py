# linkgrab/infra/media_source.py
"""
yt-dlp media source.

Two-phase acquisition against the ``yt-dlp`` CLI:

1. Metadata: ``yt-dlp [-x] --no-download -J <uri>`` → id, format, title,
   exact size (if known), live flag.
2. Data: ``yt-dlp <transcode flags> -f <format> ... -o - <uri>`` → raw bytes
   on stdout.

Size handling:
- size known up front: rejected with TOO_LARGE at or above the ceiling,
  otherwise streamed straight from the process (bounded memory).
- size unknown: stdout is drained into memory before returning, with a
  cutoff at ``buffered_limit`` bytes (TOO_LARGE once reached).

Error mapping (``AcquisitionError.kind``):
- yt-dlp stderr ending in "truncated."     → NOT_FOUND
- other metadata failure / bad JSON        → METADATA_FETCH_FAILED
- ``is_live``                              → IS_STREAM
- spawn / stdout failure, bad exit status  → DATA_FETCH_FAILED
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from linkgrab.core.domain import (
    AcquisitionError,
    ErrorKind,
    MediaHandle,
    MediaKind,
    MediaMetadata,
    SourceDescriptor,
)
from linkgrab.core.ports import ProcessRunner, ProcessStream
from linkgrab.infra.logging_config import get_logger
from linkgrab.infra.metrics import AppMetrics

logger = get_logger(__name__)

MAX_FILESIZE = 1 << 30  # 1 GiB
NOT_FOUND_SIGNATURE = b"truncated.\n"


def parse_metadata(raw: bytes) -> MediaMetadata:
    """Parse ``yt-dlp -J`` output. Raises METADATA_FETCH_FAILED on anything unexpected."""
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise AcquisitionError(
            ErrorKind.METADATA_FETCH_FAILED, f"failed to decode video data as JSON: {exc}"
        ) from exc

    if not isinstance(data, dict):
        raise AcquisitionError(ErrorKind.METADATA_FETCH_FAILED, "metadata is not a JSON object")

    for key in ("id", "format_id", "title"):
        if not isinstance(data.get(key), str):
            raise AcquisitionError(
                ErrorKind.METADATA_FETCH_FAILED, f"metadata field {key!r} missing or not a string"
            )

    filesize = data.get("filesize")
    if filesize is not None and (isinstance(filesize, bool) or not isinstance(filesize, int)):
        raise AcquisitionError(ErrorKind.METADATA_FETCH_FAILED, f"bad filesize: {filesize!r}")

    return MediaMetadata(
        id=data["id"],
        format_id=data["format_id"],
        title=data["title"],
        filesize=filesize,
        is_live=bool(data.get("is_live") or False),
    )


def _once(func: Callable[[], None]) -> Callable[[], None]:
    called = False

    def wrapper() -> None:
        nonlocal called
        if not called:
            called = True
            func()

    return wrapper


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class YtDlpMediaSource:
    """
    Acquires media through the yt-dlp CLI.

    The process runner is injected so tests can use a fake one.
    ``max_concurrent`` caps how many acquisitions (metadata phase through
    handle close) run at once; 0 disables the cap.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        binary: str = "yt-dlp",
        max_filesize: int = MAX_FILESIZE,
        buffered_limit: int | None = MAX_FILESIZE,
        chunk_size: int = 64 * 1024,
        max_concurrent: int = 0,
        metadata_dump_dir: Path | None = None,
    ):
        self._runner = runner
        self._binary = binary
        self._max_filesize = max_filesize
        self._buffered_limit = buffered_limit
        self._chunk_size = chunk_size
        self._slots = asyncio.Semaphore(max_concurrent) if max_concurrent > 0 else None
        self._metadata_dump_dir = metadata_dump_dir

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def metadata_command(self, uri: str, kind: MediaKind) -> list[str]:
        argv = [self._binary]
        if kind is MediaKind.AUDIO:
            argv.append("-x")
        argv += ["--no-download", "-J", uri]
        return argv

    def data_command(self, uri: str, kind: MediaKind, format_id: str) -> list[str]:
        argv = [self._binary]
        if kind is MediaKind.VIDEO:
            argv += ["--recode-video", "mp4"]
        else:
            argv += ["--audio-format", "mp3", "-x"]
        argv += [
            "-f", format_id,
            "--embed-metadata",
            "--embed-thumbnail",
            "-o", "-",
            uri,
        ]
        return argv

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def acquire(self, descriptor: SourceDescriptor, kind: MediaKind) -> MediaHandle:
        """
        Fetch metadata, apply the size/live policy and start the download.

        Raises:
            AcquisitionError: see module docstring for the mapping.
        """
        uri = str(descriptor)
        release = await self._take_slot()
        try:
            metadata = await self.fetch_metadata(uri, kind)
            self._check_policy(uri, metadata)
            handle = await self._start_download(uri, kind, metadata, release)
        except AcquisitionError as exc:
            release()
            AppMetrics.acquisition(kind.value, exc.kind.value)
            raise
        except BaseException:
            release()
            raise

        AppMetrics.acquisition(kind.value, "ok")
        return handle

    async def fetch_metadata(self, uri: str, kind: MediaKind) -> MediaMetadata:
        argv = self.metadata_command(uri, kind)
        try:
            with AppMetrics.track_metadata_time(kind.value):
                result = await self._runner.run(argv)
        except OSError as exc:
            logger.error(f"failed to launch `{self._binary}` to get the video data: {exc}")
            raise AcquisitionError(ErrorKind.METADATA_FETCH_FAILED, str(exc)) from exc

        if not result.ok:
            if result.stderr.endswith(NOT_FOUND_SIGNATURE):
                raise AcquisitionError(ErrorKind.NOT_FOUND, f"{uri} is unavailable")
            logger.error(
                f"`{self._binary}` exited unsuccessfully while fetching metadata:\n"
                f"command: {argv}\n"
                f"stderr:\n{result.stderr.decode('utf-8', errors='replace')}"
            )
            raise AcquisitionError(
                ErrorKind.METADATA_FETCH_FAILED, f"exit status {result.returncode}"
            )

        try:
            metadata = parse_metadata(result.stdout)
        except AcquisitionError as exc:
            logger.error(f"Unusable metadata for {uri}: {exc.detail}")
            raise

        if self._metadata_dump_dir is not None:
            await self._dump_metadata(metadata.id, result.stdout)
        return metadata

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _take_slot(self) -> Callable[[], None]:
        if self._slots is None:
            return lambda: None
        await self._slots.acquire()
        return _once(self._slots.release)

    def _check_policy(self, uri: str, metadata: MediaMetadata) -> None:
        if metadata.is_live:
            raise AcquisitionError(ErrorKind.IS_STREAM, f"{uri} is a live stream")
        if metadata.filesize is not None and metadata.filesize >= self._max_filesize:
            raise AcquisitionError(
                ErrorKind.TOO_LARGE, f"{uri} reports {metadata.filesize} bytes"
            )

    async def _start_download(
        self,
        uri: str,
        kind: MediaKind,
        metadata: MediaMetadata,
        release: Callable[[], None],
    ) -> MediaHandle:
        argv = self.data_command(uri, kind, metadata.format_id)
        try:
            process = await self._runner.spawn(argv)
        except OSError as exc:
            logger.error(f"Failed to download media\ncommand: {argv}\ncause: {exc}")
            raise AcquisitionError(ErrorKind.DATA_FETCH_FAILED, str(exc)) from exc

        filename = f"{metadata.title}.{kind.extension}"

        if metadata.filesize is not None:
            return MediaHandle(
                chunks=self._stream(process),
                size=metadata.filesize,
                filename=filename,
                kind=kind,
                on_close=self._closer(process, release),
            )

        try:
            data = await self._drain(process, uri)
        except BaseException:
            await process.terminate()
            raise

        logger.info(f"Buffered {len(data)} bytes for {uri} (size unknown up front)")
        return MediaHandle(
            chunks=_single_chunk(data),
            size=len(data),
            filename=filename,
            kind=kind,
            on_close=self._closer(process, release),
        )

    @staticmethod
    def _closer(process: ProcessStream, release: Callable[[], None]) -> Callable[[], Awaitable[None]]:
        async def close() -> None:
            try:
                await process.terminate()
            finally:
                release()
        return close

    async def _stream(self, process: ProcessStream) -> AsyncIterator[bytes]:
        try:
            while True:
                try:
                    chunk = await process.read(self._chunk_size)
                except OSError as exc:
                    raise AcquisitionError(ErrorKind.DATA_FETCH_FAILED, str(exc)) from exc
                if not chunk:
                    break
                yield chunk

            returncode = await process.wait()
            if returncode != 0:
                logger.error(f"`{self._binary}` exited with {returncode} mid-stream")
                raise AcquisitionError(
                    ErrorKind.DATA_FETCH_FAILED, f"exit status {returncode} while streaming"
                )
        finally:
            await process.terminate()

    async def _drain(self, process: ProcessStream, uri: str) -> bytes:
        buf = bytearray()
        while True:
            try:
                chunk = await process.read(self._chunk_size)
            except OSError as exc:
                raise AcquisitionError(ErrorKind.DATA_FETCH_FAILED, str(exc)) from exc
            if not chunk:
                break
            buf += chunk
            if self._buffered_limit is not None and len(buf) >= self._buffered_limit:
                raise AcquisitionError(
                    ErrorKind.TOO_LARGE, f"{uri} exceeded {self._buffered_limit} bytes while buffering"
                )

        returncode = await process.wait()
        if returncode != 0:
            logger.error(f"`{self._binary}` exited with {returncode} while buffering {uri}")
            raise AcquisitionError(ErrorKind.DATA_FETCH_FAILED, f"exit status {returncode}")
        if not buf:
            raise AcquisitionError(ErrorKind.DATA_FETCH_FAILED, "no data on stdout")
        return bytes(buf)

    async def _dump_metadata(self, media_id: str, raw: bytes) -> None:
        path = self._metadata_dump_dir / f"{media_id}.json"
        try:
            await asyncio.to_thread(path.write_bytes, raw)
        except OSError as exc:
            logger.warning(f"Could not dump metadata to {path}: {exc}")
