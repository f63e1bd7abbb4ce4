"""Scratch tree — per-process temp storage for downloaded logs and artifacts.

One ``ScratchTree`` is built by the server's composition root and passed
to every component that writes downloads.  Its root lives directly under
the system temp directory::

    <tmp>/ado-mcp-server-<pid>-<random>/
        downloads/logs/<buildId>/<file>
        downloads/artifacts/<buildId>/<file>

The pid in the directory name lets a later process recognise trees whose
owner died without cleaning up (``reap_orphans``).  ``register_teardown``
removes the live tree on normal exit and on SIGINT / SIGTERM.
"""

from __future__ import annotations

import atexit
import logging
import os
import re
import shutil
import signal
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from ado_mcp.errors import ScratchInitError
from ado_mcp.sanitiser import (
    CATEGORIES,
    require_build_id,
    require_category,
    sanitize_segment,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ROOT_PREFIX = "ado-mcp-server"
DOWNLOADS_DIR = "downloads"

_ORPHAN_PATTERN = re.compile(rf"^{re.escape(ROOT_PREFIX)}-(\d+)-")


def system_temp_root() -> Path:
    """Canonical (symlink-resolved) system temp directory."""
    return Path(tempfile.gettempdir()).resolve()


# ---------------------------------------------------------------------------
# Scratch tree
# ---------------------------------------------------------------------------


class ScratchTree:
    """Lazily-created, process-private download directory.

    Parameters
    ----------
    temp_root : Path | None
        Directory the scratch root is created under.  Defaults to the
        canonical system temp directory.
    reap : bool
        Run ``reap_orphans`` once after the root is created (default True).

    ``ensure_root()`` is safe to call concurrently: the first caller creates
    the tree under a lock, everyone else gets the cached path.
    """

    def __init__(self, temp_root: Path | None = None, *, reap: bool = True) -> None:
        self._temp_root = temp_root
        self._reap = reap
        self._root: Path | None = None
        self._lock = threading.Lock()
        self.last_reap: ReapReport | None = None

    # -- Properties ---------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._root is not None

    @property
    def root(self) -> Path | None:
        """The scratch root, or ``None`` before the first ``ensure_root()``."""
        return self._root

    # -- Allocation ---------------------------------------------------------

    def ensure_root(self) -> Path:
        """Create the scratch tree on first call; return its root.

        Raises ``ScratchInitError`` when the root cannot be created.  There
        is no fallback location.
        """
        root = self._root
        if root is not None:
            return root

        with self._lock:
            if self._root is not None:
                return self._root

            temp_root = self._temp_root or system_temp_root()
            try:
                created = Path(
                    tempfile.mkdtemp(
                        prefix=f"{ROOT_PREFIX}-{os.getpid()}-", dir=temp_root
                    )
                )
                for category in CATEGORIES:
                    (created / DOWNLOADS_DIR / category).mkdir(
                        parents=True, exist_ok=True
                    )
            except OSError as exc:
                raise ScratchInitError(str(temp_root), str(exc)) from exc

            self._root = created
            logger.info("[scratch] created %s", created)

        if self._reap:
            try:
                self.last_reap = reap_orphans(temp_root, live_root=created)
            except Exception:
                logger.warning("[reaper] orphan scan failed", exc_info=True)

        return created

    def downloads_dir(self) -> Path:
        return self.ensure_root() / DOWNLOADS_DIR

    def category_dir(self, category: str) -> Path:
        return self.downloads_dir() / require_category(category)

    def build_dir(self, category: str, build_id: object) -> Path:
        """Return (and create) ``<root>/downloads/<category>/<build_id>``."""
        category = require_category(category)
        bid = require_build_id(build_id)
        path = self.category_dir(category) / str(bid)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def download_path(self, category: str, build_id: object, filename: str) -> Path:
        """Return ``<root>/downloads/<category>/<build_id>/<safe filename>``.

        Validates every argument, then creates the build directory.
        """
        safe_name = sanitize_segment(filename)
        return self.build_dir(category, build_id) / safe_name

    def contains(self, path: Path) -> bool:
        """True when *path* lies inside the live scratch root (no I/O)."""
        if self._root is None:
            return False
        try:
            Path(os.path.abspath(path)).relative_to(self._root)
        except ValueError:
            return False
        return True

    # -- Teardown -----------------------------------------------------------

    def destroy(self) -> None:
        """Remove the whole tree.  Idempotent and never raises."""
        root = self._root
        if root is None:
            return
        shutil.rmtree(root, ignore_errors=True)


# ---------------------------------------------------------------------------
# Orphan reaper
# ---------------------------------------------------------------------------


@dataclass
class ReapReport:
    """Outcome of one orphan scan."""

    removed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "removed": self.removed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def pid_is_running(pid: int) -> bool:
    """Return ``True`` if a process with the given PID appears to be alive."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def reap_orphans(
    temp_root: Path,
    *,
    live_root: Path | None = None,
    current_pid: int | None = None,
    is_running: Callable[[int], bool] = pid_is_running,
) -> ReapReport:
    """Delete scratch trees under *temp_root* whose owning process is gone.

    Never touches *live_root* or any tree carrying *current_pid*.  Errors
    on individual entries are logged and collected; the scan continues.
    """
    current_pid = os.getpid() if current_pid is None else current_pid
    report = ReapReport()

    try:
        entries = sorted(os.listdir(temp_root))
    except OSError as exc:
        logger.warning("[reaper] cannot scan %s: %s", temp_root, exc)
        report.errors.append(f"Failed to scan {temp_root}: {exc}")
        return report

    for entry in entries:
        match = _ORPHAN_PATTERN.match(entry)
        if not match:
            continue
        path = Path(temp_root) / entry
        pid = int(match.group(1))

        if pid == current_pid or (live_root is not None and path == live_root):
            continue
        try:
            running = is_running(pid)
        except (OverflowError, ValueError) as exc:
            # pid does not fit the platform's pid type
            logger.warning("[reaper] cannot probe pid in %s: %s", path, exc)
            report.errors.append(f"Invalid pid in {path}: {exc}")
            continue
        if running:
            report.skipped.append(str(path))
            continue

        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            # Another reaper got there first
            continue
        except OSError as exc:
            logger.warning("[reaper] failed to remove %s: %s", path, exc)
            report.errors.append(f"Failed to remove {path}: {exc}")
            continue
        logger.info("[reaper] removed orphaned temp directory %s (pid %d)", path, pid)
        report.removed.append(str(path))

    return report


# ---------------------------------------------------------------------------
# Teardown hook
# ---------------------------------------------------------------------------


_TEARDOWN_SIGNALS: tuple[int, ...] = tuple(
    sig for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)) if sig is not None
)


class Teardown:
    """Exit-time cleanup registered for one scratch tree.

    Handlers do filesystem work only: remove the tree, then hand the
    signal on to whatever handler was installed before.
    """

    def __init__(self, tree: ScratchTree) -> None:
        self._tree = tree
        self._previous: dict[int, Any] = {}
        self._registered = False

    def register(self) -> Teardown:
        atexit.register(self._on_exit)
        if threading.current_thread() is threading.main_thread():
            for sig in _TEARDOWN_SIGNALS:
                self._previous[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
        self._registered = True
        return self

    def unregister(self) -> None:
        if not self._registered:
            return
        atexit.unregister(self._on_exit)
        for sig, previous in self._previous.items():
            signal.signal(sig, previous)
        self._previous.clear()
        self._registered = False

    def _on_exit(self) -> None:
        self._tree.destroy()

    def _on_signal(self, signum: int, frame: Any) -> None:
        self._tree.destroy()
        previous = self._previous.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_IGN:
            return
        else:
            sys.exit(128 + signum)


def register_teardown(tree: ScratchTree) -> Teardown:
    """Remove *tree* at interpreter exit and on SIGINT / SIGTERM."""
    return Teardown(tree).register()
