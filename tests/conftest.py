"""Shared test fixtures — reduces boilerplate across test modules.

Provides:
- ``scratch_tree`` — a ``ScratchTree`` rooted in ``tmp_path`` (no reaping)
- ``FakeBuildSource`` — in-memory timeline + log streams
- ``simple_timeline`` / ``stage_timeline`` — canonical record sets
- ``service`` — a ``DownloadService`` wired to the fakes
- ``make_download`` — helper to drop a file into the scratch catalog
"""

from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from ado_mcp.locator import TimelineRecord
from ado_mcp.mcp.downloads import DownloadService
from ado_mcp.retriever import StreamingRetriever
from ado_mcp.scratch import ScratchTree

# ---------------------------------------------------------------------------
# Canonical test identifiers
# ---------------------------------------------------------------------------

BUILD_ID = 12345


def record(**fields) -> TimelineRecord:
    """Build a ``TimelineRecord`` from Azure DevOps-style camelCase fields."""
    return TimelineRecord.model_validate(fields)


SIMPLE_RECORDS: list[dict] = [
    {
        "id": "job-1",
        "parentId": None,
        "type": "Job",
        "name": "Build Job",
        "startTime": "2024-01-01T10:00:00Z",
        "finishTime": "2024-01-01T10:05:00Z",
        "state": "completed",
        "result": "succeeded",
        "log": {
            "id": 1,
            "type": "Container",
            "url": "https://dev.azure.com/test-org/test-project/_apis/build/builds/12345/logs/1",
        },
    }
]

STAGE_RECORDS: list[dict] = [
    {
        "id": "stage-1",
        "type": "Stage",
        "name": "Build Stage",
        "state": "completed",
        "result": "succeeded",
        "startTime": "2024-01-01T10:00:00Z",
        "finishTime": "2024-01-01T10:05:00Z",
    },
    {"id": "phase-1", "parentId": "stage-1", "type": "Phase", "name": "Build Phase", "state": "completed"},
    {
        "id": "job-1",
        "parentId": "phase-1",
        "type": "Job",
        "name": "Build Job",
        "state": "completed",
        "startTime": "2024-01-01T10:00:00Z",
        "finishTime": "2024-01-01T10:03:00Z",
        "log": {"id": 1},
    },
    {
        "id": "job-2",
        "parentId": "phase-1",
        "type": "Job",
        "name": "Test Job",
        "state": "completed",
        "log": {"id": 2},
    },
    {"id": "task-1", "parentId": "job-1", "type": "Task", "name": "Checkout", "state": "completed", "log": {"id": 3}},
    {"id": "stage-2", "type": "Stage", "name": "Deploy Stage", "state": "inProgress"},
    {"id": "job-3", "parentId": "stage-2", "type": "Job", "name": "Deploy Job", "state": "pending"},
]


# ---------------------------------------------------------------------------
# Fake remote build source
# ---------------------------------------------------------------------------


class FakeBuildSource:
    """In-memory stand-in for ``AzureDevOpsClient``.

    ``logs`` maps log id -> payload bytes.  ``fail_after`` maps log id -> a
    byte count after which the stream raises ``ConnectionError``.
    """

    def __init__(
        self,
        records: list[TimelineRecord],
        logs: dict[int, bytes] | None = None,
        *,
        chunk_size: int = 1024,
        fail_after: dict[int, int] | None = None,
    ) -> None:
        self.records = records
        self.logs = logs or {}
        self.chunk_size = chunk_size
        self.fail_after = fail_after or {}
        self.timeline_calls: list[int] = []
        self.stream_calls: list[tuple[int, int]] = []
        self.artifacts: dict[str, bytes] = {}

    async def get_timeline(self, build_id: int) -> list[TimelineRecord]:
        self.timeline_calls.append(build_id)
        return self.records

    def open_log_stream(self, build_id: int, log_id: int):
        self.stream_calls.append((build_id, log_id))
        return self._stream(self.logs.get(log_id, b""), self.fail_after.get(log_id))

    def open_artifact_stream(self, build_id: int, artifact_name: str, definition_id=None):
        return self._stream(self.artifacts[artifact_name], None)

    @asynccontextmanager
    async def _stream(self, payload: bytes, fail_after: int | None):
        async def chunks():
            sent = 0
            for i in range(0, len(payload), self.chunk_size):
                if fail_after is not None and sent >= fail_after:
                    raise ConnectionError("connection reset by peer")
                piece = payload[i:i + self.chunk_size]
                sent += len(piece)
                yield piece
            if fail_after is not None and sent >= fail_after:
                raise ConnectionError("connection reset by peer")

        yield chunks()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def scratch_tree(tmp_path: Path) -> ScratchTree:
    """A scratch tree under ``tmp_path/tmp`` that does not reap orphans."""
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()
    tree = ScratchTree(temp_root=temp_root, reap=False)
    yield tree
    tree.destroy()


@pytest.fixture
def simple_timeline() -> list[TimelineRecord]:
    return [record(**r) for r in SIMPLE_RECORDS]


@pytest.fixture
def stage_timeline() -> list[TimelineRecord]:
    return [record(**r) for r in STAGE_RECORDS]


@pytest.fixture
def fake_source(simple_timeline) -> FakeBuildSource:
    return FakeBuildSource(simple_timeline, {1: b"line 1\nline 2\nline 3\n"})


@pytest.fixture
def service(scratch_tree, fake_source) -> DownloadService:
    return DownloadService(scratch_tree, fake_source, StreamingRetriever(chunk_size=512))


@pytest.fixture
def make_download(scratch_tree):
    """Write a file of *size* bytes into the catalog, optionally aged."""

    def _make(
        category: str,
        build_id: int,
        filename: str,
        size: int,
        *,
        age_hours: float = 0.0,
    ) -> Path:
        path = scratch_tree.download_path(category, build_id, filename)
        path.write_bytes(b"x" * size)
        if age_hours:
            ts = time.time() - age_hours * 3600
            os.utime(path, (ts, ts))
        return path

    return _make
