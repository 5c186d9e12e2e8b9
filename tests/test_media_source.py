# tests/test_media_source.py
"""Tests for linkgrab/infra/media_source.py: yt-dlp driven through a fake process runner."""
import json

import pytest

from linkgrab.core.domain import AcquisitionError, ErrorKind, MediaKind, SourceDescriptor, SourceSite
from linkgrab.infra.media_source import MAX_FILESIZE, YtDlpMediaSource, parse_metadata

DESCRIPTOR = SourceDescriptor("https://youtu.be/dQw4w9WgXcQ", SourceSite.YOUTUBE)


# ============================================================================
# Command lines
# ============================================================================

class TestCommands:
    def test_metadata_command_video(self, fake_runner_factory):
        source = YtDlpMediaSource(fake_runner_factory())
        assert source.metadata_command("https://youtu.be/x", MediaKind.VIDEO) == [
            "yt-dlp", "--no-download", "-J", "https://youtu.be/x",
        ]

    def test_metadata_command_audio_extracts(self, fake_runner_factory):
        source = YtDlpMediaSource(fake_runner_factory())
        assert source.metadata_command("https://youtu.be/x", MediaKind.AUDIO)[:2] == ["yt-dlp", "-x"]

    def test_data_command_video(self, fake_runner_factory):
        source = YtDlpMediaSource(fake_runner_factory(), binary="/opt/yt-dlp")
        argv = source.data_command("https://youtu.be/x", MediaKind.VIDEO, "137")
        assert argv == [
            "/opt/yt-dlp", "--recode-video", "mp4",
            "-f", "137", "--embed-metadata", "--embed-thumbnail",
            "-o", "-", "https://youtu.be/x",
        ]

    def test_data_command_audio(self, fake_runner_factory):
        source = YtDlpMediaSource(fake_runner_factory())
        argv = source.data_command("https://youtu.be/x", MediaKind.AUDIO, "251")
        assert argv[1:4] == ["--audio-format", "mp3", "-x"]
        assert argv[-3:] == ["-o", "-", "https://youtu.be/x"]


# ============================================================================
# Metadata parsing
# ============================================================================

class TestParseMetadata:
    def test_valid(self, metadata_factory):
        meta = parse_metadata(json.dumps(metadata_factory(filesize=None, is_live=None)).encode())
        assert meta.id == "dQw4w9WgXcQ"
        assert meta.filesize is None
        assert meta.is_live is False

    def test_extra_fields_ignored(self, metadata_factory):
        meta = parse_metadata(json.dumps(metadata_factory(formats=[{"x": 1}])).encode())
        assert meta.format_id == "18"

    @pytest.mark.parametrize("raw", [
        b"not json",
        b"[]",
        json.dumps({"id": "x", "format_id": "18"}).encode(),  # no title
        json.dumps({"id": 1, "format_id": "18", "title": "t"}).encode(),
        json.dumps({"id": "x", "format_id": "18", "title": "t", "filesize": "big"}).encode(),
        json.dumps({"id": "x", "format_id": "18", "title": "t", "filesize": True}).encode(),
    ])
    def test_malformed(self, raw):
        with pytest.raises(AcquisitionError) as exc_info:
            parse_metadata(raw)
        assert exc_info.value.kind is ErrorKind.METADATA_FETCH_FAILED


# ============================================================================
# Acquisition policy
# ============================================================================

class TestAcquirePolicy:
    @pytest.mark.asyncio
    async def test_size_just_below_ceiling_is_accepted(self, fake_runner_factory, metadata_factory):
        runner = fake_runner_factory(metadata_factory(filesize=MAX_FILESIZE - 1))
        handle = await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert handle.size == MAX_FILESIZE - 1
        assert len(runner.spawn_calls) == 1
        await handle.aclose()

    @pytest.mark.asyncio
    async def test_size_at_ceiling_is_too_large(self, fake_runner_factory, metadata_factory):
        runner = fake_runner_factory(metadata_factory(filesize=MAX_FILESIZE))
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.TOO_LARGE
        # never starts the download
        assert runner.spawn_calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [MediaKind.AUDIO, MediaKind.VIDEO])
    async def test_live_stream_rejected_for_both_kinds(self, fake_runner_factory, metadata_factory, kind):
        runner = fake_runner_factory(metadata_factory(is_live=True, filesize=None))
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, kind)
        assert exc_info.value.kind is ErrorKind.IS_STREAM
        assert runner.spawn_calls == []

    @pytest.mark.asyncio
    async def test_live_check_precedes_size_check(self, fake_runner_factory, metadata_factory):
        runner = fake_runner_factory(metadata_factory(is_live=True, filesize=MAX_FILESIZE * 2))
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.IS_STREAM


# ============================================================================
# Metadata failures
# ============================================================================

class TestMetadataFailures:
    @pytest.mark.asyncio
    async def test_truncated_stderr_is_not_found(self, fake_runner_factory):
        runner = fake_runner_factory(
            metadata_returncode=1,
            stderr=b"ERROR: [youtube:truncated_id] abc: Incomplete YouTube ID abc. URL looks truncated.\n",
        )
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_failure_is_metadata_fetch_failed(self, fake_runner_factory):
        runner = fake_runner_factory(metadata_returncode=1, stderr=b"ERROR: HTTP Error 403\n")
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.METADATA_FETCH_FAILED

    @pytest.mark.asyncio
    async def test_bad_json(self, fake_runner_factory):
        runner = fake_runner_factory(b"{oops")
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.AUDIO)
        assert exc_info.value.kind is ErrorKind.METADATA_FETCH_FAILED

    @pytest.mark.asyncio
    async def test_binary_missing(self, fake_runner_factory):
        runner = fake_runner_factory()

        async def run(argv):
            raise FileNotFoundError("yt-dlp")

        runner.run = run
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.METADATA_FETCH_FAILED


# ============================================================================
# Data phase
# ============================================================================

class TestStreaming:
    @pytest.mark.asyncio
    async def test_known_size_streams_chunks(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory([b"a" * 10, b"b" * 10])
        runner = fake_runner_factory(metadata_factory(filesize=20), process=process)
        source = YtDlpMediaSource(runner, chunk_size=8)

        handle = await source.acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert handle.filename == "Never Gonna Give You Up.mp4"
        assert handle.mime_type == "video/mpeg"
        # nothing read until the body is consumed
        assert process.reads == 0

        body = await handle.read_all()
        assert body == b"a" * 10 + b"b" * 10
        assert process.terminated >= 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_mid_stream(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory([b"partial"], returncode=1)
        runner = fake_runner_factory(metadata_factory(filesize=100), process=process)
        handle = await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)

        with pytest.raises(AcquisitionError) as exc_info:
            await handle.read_all()
        assert exc_info.value.kind is ErrorKind.DATA_FETCH_FAILED
        assert handle.error is exc_info.value

    @pytest.mark.asyncio
    async def test_spawn_failure(self, fake_runner_factory, metadata_factory):
        runner = fake_runner_factory(metadata_factory(), spawn_error=OSError("no such file"))
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.DATA_FETCH_FAILED

    @pytest.mark.asyncio
    async def test_body_is_single_use(self, fake_runner_factory, metadata_factory):
        handle = await YtDlpMediaSource(fake_runner_factory(metadata_factory())).acquire(DESCRIPTOR, MediaKind.AUDIO)
        await handle.read_all()
        with pytest.raises(RuntimeError):
            handle.__aiter__()


class TestBuffered:
    @pytest.mark.asyncio
    async def test_unknown_size_is_buffered(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory([b"x" * 300])
        runner = fake_runner_factory(metadata_factory(filesize=None), process=process)
        handle = await YtDlpMediaSource(runner, chunk_size=64).acquire(DESCRIPTOR, MediaKind.AUDIO)

        # drained before returning
        assert handle.size == 300
        assert handle.filename.endswith(".mp3")
        assert await handle.read_all() == b"x" * 300

    @pytest.mark.asyncio
    async def test_buffered_cutoff_is_too_large(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory([b"x" * 1000])
        runner = fake_runner_factory(metadata_factory(filesize=None), process=process)
        source = YtDlpMediaSource(runner, buffered_limit=512, chunk_size=100)

        with pytest.raises(AcquisitionError) as exc_info:
            await source.acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.TOO_LARGE
        assert process.terminated == 1

    @pytest.mark.asyncio
    async def test_nonzero_exit_after_drain(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory([b"data"], returncode=2)
        runner = fake_runner_factory(metadata_factory(filesize=None), process=process)
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.DATA_FETCH_FAILED

    @pytest.mark.asyncio
    async def test_empty_output(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory([])
        runner = fake_runner_factory(metadata_factory(filesize=None), process=process)
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.DATA_FETCH_FAILED

    @pytest.mark.asyncio
    async def test_read_error(self, fake_runner_factory, fake_process_factory, metadata_factory):
        process = fake_process_factory(read_error=BrokenPipeError("pipe"))
        runner = fake_runner_factory(metadata_factory(filesize=None), process=process)
        with pytest.raises(AcquisitionError) as exc_info:
            await YtDlpMediaSource(runner).acquire(DESCRIPTOR, MediaKind.VIDEO)
        assert exc_info.value.kind is ErrorKind.DATA_FETCH_FAILED


# ============================================================================
# Concurrency cap
# ============================================================================

class TestConcurrencyCap:
    @pytest.mark.asyncio
    async def test_slot_released_on_close(self, fake_runner_factory, metadata_factory):
        source = YtDlpMediaSource(fake_runner_factory(metadata_factory()), max_concurrent=1)
        first = await source.acquire(DESCRIPTOR, MediaKind.VIDEO)
        await first.aclose()
        # would hang if the slot leaked
        second = await source.acquire(DESCRIPTOR, MediaKind.VIDEO)
        await second.aclose()

    @pytest.mark.asyncio
    async def test_slot_released_on_failure(self, fake_runner_factory, metadata_factory):
        runner = fake_runner_factory(metadata_factory(filesize=MAX_FILESIZE))
        source = YtDlpMediaSource(runner, max_concurrent=1)
        for _ in range(3):
            with pytest.raises(AcquisitionError):
                await source.acquire(DESCRIPTOR, MediaKind.VIDEO)

    @pytest.mark.asyncio
    async def test_double_close_releases_once(self, fake_runner_factory, metadata_factory):
        source = YtDlpMediaSource(fake_runner_factory(metadata_factory()), max_concurrent=1)
        handle = await source.acquire(DESCRIPTOR, MediaKind.VIDEO)
        await handle.aclose()
        await handle.aclose()
        assert source._slots._value == 1


class TestMetadataDump:
    @pytest.mark.asyncio
    async def test_raw_metadata_written(self, tmp_path, fake_runner_factory, metadata_factory):
        runner = fake_runner_factory(metadata_factory())
        source = YtDlpMediaSource(runner, metadata_dump_dir=tmp_path)
        await source.fetch_metadata("https://youtu.be/dQw4w9WgXcQ", MediaKind.VIDEO)
        assert json.loads((tmp_path / "dQw4w9WgXcQ.json").read_text())["format_id"] == "18"
