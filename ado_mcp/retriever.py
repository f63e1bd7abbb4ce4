"""Streaming retriever — copy a remote byte stream into a local file.

The payload is never held in memory: chunks are written as they arrive.
The stream and the file handle are closed on every exit path.  When the
transfer fails partway through, the partial file is left on disk and
``TransferFailed`` reports how many bytes made it, so the caller can
decide whether to retry or discard it.

One retrieval moves through::

    Resolved -> Validated -> Streaming -> Completed | Failed

There is no retry loop here; a failure is terminal for that call.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Callable

from pydantic import BaseModel, ConfigDict, Field

from ado_mcp.errors import (
    DownloadError,
    FilesystemError,
    TransferFailed,
    TransferTimeout,
)
from ado_mcp.sanitiser import sanitize_segment

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

StreamOpener = Callable[[], AbstractAsyncContextManager[AsyncIterator[bytes]]]


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RetrievalOutcome(BaseModel):
    """Result of one successful download.  Not persisted anywhere."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Where the file was written")
    size: int = Field(..., ge=0, description="Bytes on disk after the copy")
    record_ids: list[str] = Field(default_factory=list)
    record_name: str = ""
    record_type: str = ""
    log_id: int | None = None
    duration: str | None = None
    is_temporary: bool = False
    downloaded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        return {
            "saved_to": self.path,
            "file_size": self.size,
            "is_temporary": self.is_temporary,
            "downloaded_at": self.downloaded_at.isoformat(),
            "record_ids": self.record_ids,
            "record_name": self.record_name,
            "record_type": self.record_type,
            "log_id": self.log_id,
            "duration": self.duration,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_duration(start: datetime | None, finish: datetime | None) -> str:
    """Human-readable elapsed time between two timestamps.

    >>> from datetime import datetime
    >>> format_duration(datetime(2024, 1, 1, 10, 0), datetime(2024, 1, 1, 10, 5, 7))
    '5m 7s'
    """
    if start is None:
        return "Not started"
    if finish is None:
        return "In progress"
    total = max(0, int((finish - start).total_seconds()))
    minutes, seconds = divmod(total, 60)
    if minutes > 60:
        hours, mins = divmod(minutes, 60)
        return f"{hours}h {mins}m"
    return f"{minutes}m {seconds}s"


def synthesize_filename(
    build_id: int,
    resource_name: str,
    *,
    today: date | None = None,
    suffix: str = ".log",
) -> str:
    """``build-<id>-<sanitised name>-<YYYY-MM-DD><suffix>``."""
    stamp = (today or date.today()).isoformat()
    return f"build-{build_id}-{sanitize_segment(resource_name)}-{stamp}{suffix}"


def _looks_like_directory(raw: str) -> bool:
    return raw.endswith(("/", os.sep)) or (os.altsep is not None and raw.endswith(os.altsep))


def resolve_destination(
    destination: str | Path | None,
    *,
    build_id: int,
    resource_name: str,
    default_dir: Path,
    today: date | None = None,
    suffix: str = ".log",
) -> Path:
    """Turn an optional caller path into a concrete file path.

    ``None``                          -> ``default_dir/<synthesised name>``
    existing directory or trailing /  -> ``destination/<synthesised name>``
    anything else                     -> ``destination`` as given

    The parent directory is created.
    """
    filename = synthesize_filename(build_id, resource_name, today=today, suffix=suffix)
    if destination is None or str(destination).strip() == "":
        target = default_dir / filename
    else:
        raw = str(destination)
        path = Path(raw).expanduser()
        if path.is_dir() or _looks_like_directory(raw):
            target = path / filename
        else:
            target = path

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FilesystemError(str(target.parent), str(exc)) from exc
    return target


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------


class StreamingRetriever:
    """Copies a remote byte stream into a file with bounded memory.

    Parameters
    ----------
    chunk_size:
        Upper bound on bytes requested per read (default 64 KiB).
    timeout_s:
        Optional deadline for the whole transfer.  ``None`` or ``0`` means
        no deadline.
    """

    __slots__ = ("_chunk_size", "_timeout_s")

    def __init__(
        self,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout_s: float | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._chunk_size = chunk_size
        self._timeout_s = timeout_s or None

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    async def retrieve(
        self,
        open_stream: StreamOpener,
        destination: Path,
        *,
        record_ids: list[str] | None = None,
        record_name: str = "",
        record_type: str = "",
        log_id: int | None = None,
        start_time: datetime | None = None,
        finish_time: datetime | None = None,
        is_temporary: bool = False,
    ) -> RetrievalOutcome:
        """Stream into *destination* and describe the written file."""
        progress = _Progress()
        try:
            if self._timeout_s is None:
                await self._copy(open_stream, destination, progress)
            else:
                await asyncio.wait_for(
                    self._copy(open_stream, destination, progress),
                    timeout=self._timeout_s,
                )
        except asyncio.TimeoutError as exc:
            logger.warning(
                "[retriever] %s timed out after %d bytes", destination, progress.written
            )
            raise TransferTimeout(
                str(destination), progress.written, self._timeout_s or 0
            ) from exc
        except DownloadError:
            raise
        except OSError as exc:
            if not progress.opened:
                raise FilesystemError(str(destination), str(exc)) from exc
            raise TransferFailed(str(destination), progress.written, str(exc)) from exc
        except Exception as exc:
            logger.warning(
                "[retriever] %s failed after %d bytes: %s",
                destination, progress.written, exc,
            )
            raise TransferFailed(str(destination), progress.written, str(exc)) from exc

        size = destination.stat().st_size
        duration = (
            format_duration(start_time, finish_time)
            if start_time is not None or finish_time is not None
            else None
        )
        logger.info("[retriever] wrote %s (%d bytes)", destination, size)
        return RetrievalOutcome(
            path=str(destination),
            size=size,
            record_ids=record_ids or [],
            record_name=record_name,
            record_type=record_type,
            log_id=log_id,
            duration=duration,
            is_temporary=is_temporary,
        )

    async def _copy(
        self, open_stream: StreamOpener, destination: Path, progress: _Progress
    ) -> None:
        async with open_stream() as chunks:
            with open(destination, "wb") as fh:
                progress.opened = True
                async for chunk in chunks:
                    progress.written += await asyncio.to_thread(
                        _write_slices, fh, chunk, self._chunk_size
                    )


def _write_slices(fh: BinaryIO, chunk: bytes, size: int) -> int:
    """Write *chunk* in *size*-byte slices; return the bytes written."""
    view = memoryview(chunk)
    written = 0
    for offset in range(0, len(view), size):
        written += fh.write(view[offset:offset + size])
    return written


class _Progress:
    __slots__ = ("opened", "written")

    def __init__(self) -> None:
        self.opened = False
        self.written = 0
