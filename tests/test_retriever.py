"""Tests for ado_mcp.retriever — streaming copy, destinations, durations."""

from __future__ import annotations

import asyncio
import threading
import tracemalloc
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from ado_mcp import retriever as retriever_module
from ado_mcp.errors import (
    FilesystemError,
    RemoteAPIError,
    TransferFailed,
    TransferTimeout,
)
from ado_mcp.retriever import (
    StreamingRetriever,
    format_duration,
    resolve_destination,
    synthesize_filename,
)

TODAY = date(2024, 1, 1)


def opener(*chunks: bytes, error: Exception | None = None, hang: bool = False):
    """Return a zero-arg callable producing an async chunk stream."""
    state = {"closed": False}

    @asynccontextmanager
    async def _open():
        async def gen():
            for chunk in chunks:
                yield chunk
            if error is not None:
                raise error
            if hang:
                await asyncio.sleep(3600)

        try:
            yield gen()
        finally:
            state["closed"] = True

    _open.state = state
    return _open


# ---------------------------------------------------------------------------
# retrieve
# ---------------------------------------------------------------------------


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_writes_exact_bytes(self, tmp_path: Path):
        dest = tmp_path / "out.log"
        open_stream = opener(b"line 1\n", b"line 2\n", b"line 3\n")

        outcome = await StreamingRetriever().retrieve(
            open_stream, dest, record_ids=["job-1"], record_name="Build Job", log_id=1
        )

        assert dest.read_bytes() == b"line 1\nline 2\nline 3\n"
        assert outcome.size == dest.stat().st_size == 21
        assert outcome.path == str(dest)
        assert outcome.record_ids == ["job-1"]
        assert outcome.duration is None
        assert open_stream.state["closed"]

    @pytest.mark.asyncio
    async def test_empty_stream_writes_empty_file(self, tmp_path: Path):
        dest = tmp_path / "empty.log"
        outcome = await StreamingRetriever().retrieve(opener(), dest)
        assert dest.exists()
        assert outcome.size == 0

    @pytest.mark.asyncio
    async def test_oversized_chunks_written_in_slices(self, tmp_path: Path):
        dest = tmp_path / "big.bin"
        payload = bytes(range(256)) * 40
        outcome = await StreamingRetriever(chunk_size=100).retrieve(opener(payload), dest)
        assert dest.read_bytes() == payload
        assert outcome.size == len(payload)

    @pytest.mark.asyncio
    async def test_duration_from_record_times(self, tmp_path: Path):
        start = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
        finish = datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc)
        outcome = await StreamingRetriever().retrieve(
            opener(b"x"), tmp_path / "d.log", start_time=start, finish_time=finish
        )
        assert outcome.duration == "5m 0s"
        assert outcome.to_dict()["duration"] == "5m 0s"

    @pytest.mark.asyncio
    async def test_memory_stays_bounded(self, tmp_path: Path):
        chunk_size = 64 * 1024
        total_chunks = 256  # 16 MiB

        @asynccontextmanager
        async def open_stream():
            async def gen():
                for _ in range(total_chunks):
                    yield b"\0" * chunk_size

            yield gen()

        dest = tmp_path / "large.bin"
        tracemalloc.start()
        try:
            await StreamingRetriever(chunk_size=chunk_size).retrieve(open_stream, dest)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()

        assert dest.stat().st_size == chunk_size * total_chunks
        assert peak < 4 * 1024 * 1024

    @pytest.mark.asyncio
    async def test_mid_stream_failure_leaves_partial_file(self, tmp_path: Path):
        dest = tmp_path / "partial.log"
        open_stream = opener(b"a" * 100, b"b" * 50, error=ConnectionError("connection reset"))

        with pytest.raises(TransferFailed) as exc_info:
            await StreamingRetriever().retrieve(open_stream, dest)

        err = exc_info.value
        assert err.kind == "transfer"
        assert err.bytes_written == 150
        assert err.to_dict()["partial_file_left"] is True
        assert dest.stat().st_size == 150
        assert open_stream.state["closed"]

    @pytest.mark.asyncio
    async def test_non_os_stream_error_is_transfer_failure(self, tmp_path: Path):
        open_stream = opener(b"abc", error=RuntimeError("decoder exploded"))
        with pytest.raises(TransferFailed, match="decoder exploded"):
            await StreamingRetriever().retrieve(open_stream, tmp_path / "x.log")

    @pytest.mark.asyncio
    async def test_remote_error_propagates_unwrapped(self, tmp_path: Path):
        @asynccontextmanager
        async def open_stream():
            raise RemoteAPIError("download log 1", 401)
            yield  # pragma: no cover

        with pytest.raises(RemoteAPIError):
            await StreamingRetriever().retrieve(open_stream, tmp_path / "x.log")
        assert not (tmp_path / "x.log").exists()

    @pytest.mark.asyncio
    async def test_unwritable_destination_is_filesystem_error(self, tmp_path: Path):
        dest = tmp_path / "missing-dir" / "x.log"
        with pytest.raises(FilesystemError) as exc_info:
            await StreamingRetriever().retrieve(opener(b"abc"), dest)
        assert not isinstance(exc_info.value, TransferFailed)

    @pytest.mark.asyncio
    async def test_deadline_raises_timeout(self, tmp_path: Path):
        dest = tmp_path / "slow.log"
        open_stream = opener(b"z" * 10, hang=True)

        with pytest.raises(TransferTimeout) as exc_info:
            await StreamingRetriever(timeout_s=0.05).retrieve(open_stream, dest)

        err = exc_info.value
        assert isinstance(err, TransferFailed)
        assert err.bytes_written == 10
        assert err.detail["timeout_s"] == 0.05
        assert open_stream.state["closed"]

    @pytest.mark.asyncio
    async def test_writes_happen_off_the_event_loop_thread(self, tmp_path: Path):
        threads: list[threading.Thread] = []
        real_write = retriever_module._write_slices

        def recording_write(fh, chunk, size):
            threads.append(threading.current_thread())
            return real_write(fh, chunk, size)

        dest = tmp_path / "threaded.log"
        with patch("ado_mcp.retriever._write_slices", side_effect=recording_write):
            outcome = await StreamingRetriever().retrieve(opener(b"a" * 10, b"b" * 5), dest)

        assert outcome.size == 15
        assert len(threads) == 2
        assert all(t is not threading.current_thread() for t in threads)

    def test_rejects_bad_chunk_size(self):
        with pytest.raises(ValueError):
            StreamingRetriever(chunk_size=0)


# ---------------------------------------------------------------------------
# Destination resolution
# ---------------------------------------------------------------------------


class TestResolveDestination:
    def test_synthesized_name(self):
        assert (
            synthesize_filename(12345, "Build Job", today=TODAY)
            == "build-12345-Build-Job-2024-01-01.log"
        )

    def test_none_uses_default_dir(self, tmp_path: Path):
        default = tmp_path / "scratch"
        path = resolve_destination(
            None, build_id=1, resource_name="Job", default_dir=default, today=TODAY
        )
        assert path == default / "build-1-Job-2024-01-01.log"
        assert default.is_dir()

    def test_blank_uses_default_dir(self, tmp_path: Path):
        path = resolve_destination(
            "  ", build_id=1, resource_name="Job", default_dir=tmp_path, today=TODAY
        )
        assert path.parent == tmp_path

    def test_trailing_separator_is_directory(self, tmp_path: Path):
        raw = str(tmp_path / "out") + "/"
        path = resolve_destination(
            raw, build_id=12345, resource_name="Build Job", default_dir=tmp_path, today=TODAY
        )
        assert path == tmp_path / "out" / "build-12345-Build-Job-2024-01-01.log"
        assert (tmp_path / "out").is_dir()

    def test_existing_directory(self, tmp_path: Path):
        (tmp_path / "existing").mkdir()
        path = resolve_destination(
            str(tmp_path / "existing"),
            build_id=2,
            resource_name="A",
            default_dir=tmp_path,
            today=TODAY,
        )
        assert path == tmp_path / "existing" / "build-2-A-2024-01-01.log"

    def test_file_path_used_verbatim(self, tmp_path: Path):
        raw = tmp_path / "deep" / "nested" / "my.log"
        path = resolve_destination(
            str(raw), build_id=3, resource_name="A", default_dir=tmp_path
        )
        assert path == raw
        assert raw.parent.is_dir()

    def test_parent_creation_failure(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("not a dir")
        with pytest.raises(FilesystemError):
            resolve_destination(
                str(blocker / "sub" / "x.log"),
                build_id=1,
                resource_name="A",
                default_dir=tmp_path,
            )

    def test_artifact_suffix(self, tmp_path: Path):
        path = resolve_destination(
            None,
            build_id=9,
            resource_name="drop",
            default_dir=tmp_path,
            today=TODAY,
            suffix=".zip",
        )
        assert path.name == "build-9-drop-2024-01-01.zip"


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------


class TestFormatDuration:
    def test_not_started(self):
        assert format_duration(None, None) == "Not started"

    def test_in_progress(self):
        assert format_duration(datetime(2024, 1, 1), None) == "In progress"

    def test_minutes_and_seconds(self):
        assert format_duration(datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 10, 5, 7)) == "5m 7s"

    def test_hours(self):
        assert format_duration(datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 12, 30)) == "2h 30m"

    def test_exactly_sixty_minutes(self):
        assert format_duration(datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 11, 0)) == "60m 0s"
