"""Download catalog and retention sweeper.

There is no index of downloaded files: every call walks
``downloads/<category>/<buildId>/<file>`` under the scratch root and
derives size, modification time and age from ``stat()``.  Two calls can
therefore report different ages for the same file.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from ado_mcp.sanitiser import CATEGORIES, require_hours
from ado_mcp.scratch import ScratchTree

logger = logging.getLogger(__name__)

_SECONDS_PER_HOUR = 3600.0


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class DownloadRecord(BaseModel):
    """One downloaded file, as seen on disk at query time."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., description="Absolute path of the file")
    category: str = Field(..., description="logs | artifacts")
    build_id: int = Field(..., gt=0, description="Owning build, parsed from the path")
    filename: str
    size: int = Field(..., ge=0, description="Size in bytes")
    downloaded_at: datetime = Field(..., description="Last modification time (UTC)")
    age_hours: float = Field(..., description="Hours since last modification")

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "category": self.category,
            "build_id": self.build_id,
            "filename": self.filename,
            "size": self.size,
            "downloaded_at": self.downloaded_at.isoformat(),
            "age_hours": round(self.age_hours, 1),
        }


class CleanupResult(BaseModel):
    """Partial-failure result of a retention sweep."""

    files_removed: int = 0
    bytes_freed: int = 0
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class DownloadCatalog:
    """Enumerates and prunes files under a ``ScratchTree``'s download area."""

    def __init__(self, tree: ScratchTree) -> None:
        self._tree = tree

    def list(self) -> list[DownloadRecord]:
        """Return every downloaded file, sorted by category, build, name.

        Missing directories are an empty result.  Entries that fail to
        ``stat()`` are skipped with a warning.
        """
        downloads_dir = self._tree.downloads_dir()
        now = time.time()
        records: list[DownloadRecord] = []

        for category in CATEGORIES:
            for build_dir in _subdirs(downloads_dir / category):
                try:
                    build_id = int(build_dir.name)
                except ValueError:
                    logger.debug("[catalog] skipping non-build dir %s", build_dir)
                    continue
                if build_id <= 0:
                    continue
                for entry in _entries(build_dir):
                    try:
                        st = entry.stat()
                    except OSError as exc:
                        logger.warning("[catalog] cannot stat %s: %s", entry, exc)
                        continue
                    if not entry.is_file():
                        continue
                    records.append(
                        DownloadRecord(
                            path=str(entry),
                            category=category,
                            build_id=build_id,
                            filename=entry.name,
                            size=st.st_size,
                            downloaded_at=datetime.fromtimestamp(
                                st.st_mtime, tz=timezone.utc
                            ),
                            age_hours=(now - st.st_mtime) / _SECONDS_PER_HOUR,
                        )
                    )

        records.sort(key=lambda r: (CATEGORIES.index(r.category), r.build_id, r.filename))
        return records

    def summary(self) -> dict:
        """Location, total size, file count and oldest file of the tree."""
        records = self.list()
        oldest = max(records, key=lambda r: r.age_hours, default=None)
        return {
            "path": str(self._tree.ensure_root()),
            "total_size": sum(r.size for r in records),
            "file_count": len(records),
            "oldest_file": (
                {"path": oldest.path, "age_hours": round(oldest.age_hours, 1)}
                if oldest is not None
                else None
            ),
        }

    def cleanup(self, max_age_hours: float = 24) -> CleanupResult:
        """Delete files older than *max_age_hours* and prune empty build dirs.

        ``0`` removes everything.  A negative threshold behaves like ``0``:
        every file is older than a negative age.  Per-file failures are
        collected into ``errors``; counts reflect confirmed deletions only.
        """
        threshold = require_hours(max_age_hours)
        result = CleanupResult()

        for record in self.list():
            if record.age_hours <= threshold:
                continue
            path = Path(record.path)
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                result.errors.append(f"Failed to remove {path}: {exc}")
                continue
            result.files_removed += 1
            result.bytes_freed += record.size
            _remove_if_empty(path.parent)

        if result.files_removed or result.errors:
            logger.info(
                "[catalog] cleanup(>%sh): removed=%d freed=%d errors=%d",
                threshold,
                result.files_removed,
                result.bytes_freed,
                len(result.errors),
            )
        return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _subdirs(path: Path) -> list[Path]:
    return [p for p in _entries(path) if p.is_dir()]


def _entries(path: Path) -> list[Path]:
    try:
        with os.scandir(path) as it:
            return sorted(Path(e.path) for e in it)
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("[catalog] cannot list %s: %s", path, exc)
        return []


def _remove_if_empty(directory: Path) -> None:
    try:
        directory.rmdir()
    except OSError:
        # Not empty, or already gone
        pass
