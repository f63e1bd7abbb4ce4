"""Download tool handlers — locate a timeline record, stream its log to disk.

``DownloadService`` is built once by the server's composition root and
holds the process's ``ScratchTree``, the remote build source and the
retriever.  Handlers return plain dicts tagged with ``status``:

ok       the operation did what was asked
empty    nothing to do (empty catalog, nothing old enough to sweep)
partial  some items succeeded, some failed (see ``errors``)
error    nothing succeeded (see ``errors``)

Hard failures (validation, not-found, ambiguity, state) raise
``DownloadError`` subclasses; ``tools.dispatch`` turns them into
structured error results.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any, AsyncIterator, Protocol

from ado_mcp.catalog import DownloadCatalog
from ado_mcp.errors import DownloadError, NoLogAvailable
from ado_mcp.locator import (
    TimelineRecord,
    locate,
    locate_subtree,
    require_completed,
    require_downloadable,
)
from ado_mcp.retriever import (
    RetrievalOutcome,
    StreamingRetriever,
    format_duration,
    resolve_destination,
    synthesize_filename,
)
from ado_mcp.sanitiser import require_build_id, require_hours, require_name, sanitize_segment
from ado_mcp.scratch import ScratchTree

from .config import DEFAULT_CLEANUP_HOURS

logger = logging.getLogger(__name__)


class BuildSource(Protocol):
    """What the download handlers need from the remote build system."""

    async def get_timeline(self, build_id: int) -> list[TimelineRecord]: ...

    def open_log_stream(
        self, build_id: int, log_id: int
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...

    def open_artifact_stream(
        self, build_id: int, artifact_name: str, definition_id: int | None = None
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]: ...


class DownloadService:
    """Download and scratch-storage operations exposed as MCP tools."""

    def __init__(
        self,
        tree: ScratchTree,
        source: BuildSource,
        retriever: StreamingRetriever | None = None,
    ) -> None:
        self.tree = tree
        self.source = source
        self.retriever = retriever or StreamingRetriever()
        self.catalog = DownloadCatalog(tree)

    # -- Administrative -----------------------------------------------------

    def list_downloads(self) -> dict[str, Any]:
        records = self.catalog.list()
        by_category = {"logs": 0, "artifacts": 0}
        for r in records:
            by_category[r.category] += 1
        return {
            "status": "ok" if records else "empty",
            "message": f"Found {len(records)} downloaded file(s)",
            "temp_directory": str(self.tree.ensure_root()),
            "summary": {
                "total_files": len(records),
                "total_size": sum(r.size for r in records),
                "logs": by_category["logs"],
                "artifacts": by_category["artifacts"],
            },
            "downloads": [r.to_dict() for r in records],
        }

    def cleanup_downloads(self, older_than_hours: object = DEFAULT_CLEANUP_HOURS) -> dict[str, Any]:
        hours = require_hours(older_than_hours)
        result = self.catalog.cleanup(hours)
        if result.errors:
            status = "partial" if result.files_removed else "error"
        else:
            status = "ok" if result.files_removed else "empty"
        return {
            "status": status,
            "message": "Cleanup completed",
            "older_than_hours": hours,
            "files_removed": result.files_removed,
            "space_saved": result.bytes_freed,
            "errors": result.errors,
        }

    def get_download_location(self) -> dict[str, Any]:
        info = self.catalog.summary()
        return {
            "status": "ok" if info["file_count"] else "empty",
            "message": "Temporary download directory information",
            **info,
        }

    # -- Timeline -----------------------------------------------------------

    async def get_timeline(self, build_id: object) -> dict[str, Any]:
        bid = require_build_id(build_id, field="build_id")
        records = await self.source.get_timeline(bid)
        return {
            "status": "ok" if records else "empty",
            "build_id": bid,
            "record_count": len(records),
            "records": [
                {
                    "id": r.id,
                    "parent_id": r.parent_id,
                    "type": r.type,
                    "name": r.name,
                    "state": r.state,
                    "result": r.result,
                    "log_id": r.log.id if r.log else None,
                    "duration": format_duration(r.start_time, r.finish_time),
                }
                for r in records
            ],
        }

    # -- Log downloads ------------------------------------------------------

    async def download_job_log(
        self,
        build_id: object,
        job_name: object,
        output_path: str | None = None,
    ) -> dict[str, Any]:
        """Download the log of the single ``Job`` called *job_name*."""
        bid = require_build_id(build_id, field="build_id")
        name = require_name(job_name, field="job_name")

        records = await self.source.get_timeline(bid)
        job = locate(records, name, record_type="Job")
        log_id = require_downloadable(job)
        outcome = await self._retrieve_log(bid, job, log_id, output_path)

        return {
            "status": "ok",
            "message": f'Successfully downloaded logs for job "{name}"',
            **outcome.to_dict(),
            "job_details": {
                "job_name": job.name,
                "job_id": job.id,
                "log_id": log_id,
                "duration": outcome.duration,
            },
        }

    async def download_by_name(
        self,
        build_id: object,
        name: object,
        *,
        output_path: str | None = None,
        record_type: str | None = None,
        exact: bool = True,
    ) -> dict[str, Any]:
        """Download logs for a stage, job or task found by name.

        A matching ``Stage`` downloads every job beneath it; per-job
        failures are collected instead of aborting the rest.
        """
        bid = require_build_id(build_id, field="build_id")
        wanted = require_name(name, field="name")

        records = await self.source.get_timeline(bid)
        record = locate(records, wanted, record_type=record_type or None, exact=exact)

        if record.type.lower() == "stage":
            return await self._download_stage(bid, records, record, output_path)

        log_id = require_downloadable(record)
        outcome = await self._retrieve_log(bid, record, log_id, output_path)
        return self._by_name_result(record, [outcome], [])

    async def _download_stage(
        self,
        build_id: int,
        records: list[TimelineRecord],
        stage: TimelineRecord,
        output_path: str | None,
    ) -> dict[str, Any]:
        require_completed(stage)
        group = locate_subtree(records, stage)
        if not group.jobs:
            raise NoLogAvailable(stage.name, stage.id)

        if output_path:
            target_dir = Path(output_path).expanduser() / sanitize_segment(stage.name)
        else:
            target_dir = self.tree.build_dir("logs", build_id)

        outcomes: list[RetrievalOutcome] = []
        errors: list[str] = []
        used: set[str] = set()
        for job in group.jobs:
            try:
                log_id = require_downloadable(job)
                filename = _stage_job_filename(build_id, stage, job, log_id, used)
                outcome = await self._retrieve_log(
                    build_id, job, log_id, target_dir / filename
                )
            except DownloadError as exc:
                logger.warning("[downloads] stage %r job %r: %s", stage.name, job.name, exc)
                errors.append(f"{job.name} ({job.id}): {exc}")
                continue
            outcomes.append(outcome)

        return self._by_name_result(stage, outcomes, errors, directory=target_dir)

    def _by_name_result(
        self,
        record: TimelineRecord,
        outcomes: list[RetrievalOutcome],
        errors: list[str],
        *,
        directory: Path | None = None,
    ) -> dict[str, Any]:
        if errors:
            status = "partial" if outcomes else "error"
        else:
            status = "ok"
        result: dict[str, Any] = {
            "status": status,
            "message": (
                f'Downloaded {len(outcomes)} log(s) for {record.type} "{record.name}"'
            ),
            "record_type": record.type,
            "matched_record": {
                "id": record.id,
                "name": record.name,
                "type": record.type,
                "state": record.state,
                "result": record.result,
            },
            "downloaded_logs": [o.to_dict() for o in outcomes],
            "errors": errors,
            "summary": {
                "total_logs_downloaded": len(outcomes),
                "total_size": sum(o.size for o in outcomes),
            },
        }
        if directory is not None:
            result["directory"] = str(directory)
        return result

    async def _retrieve_log(
        self,
        build_id: int,
        record: TimelineRecord,
        log_id: int,
        output_path: str | Path | None,
    ) -> RetrievalOutcome:
        destination = resolve_destination(
            output_path,
            build_id=build_id,
            resource_name=record.name,
            default_dir=self.tree.build_dir("logs", build_id),
        )
        logger.info(
            "[downloads] build %d %s %r log %d -> %s",
            build_id, record.type, record.name, log_id, destination,
        )
        return await self.retriever.retrieve(
            lambda: self.source.open_log_stream(build_id, log_id),
            destination,
            record_ids=[record.id],
            record_name=record.name,
            record_type=record.type,
            log_id=log_id,
            start_time=record.start_time,
            finish_time=record.finish_time,
            is_temporary=self.tree.contains(destination),
        )

    # -- Artifacts ----------------------------------------------------------

    async def download_artifact(
        self,
        build_id: object,
        artifact_name: object,
        *,
        output_path: str | None = None,
        definition_id: int | None = None,
    ) -> dict[str, Any]:
        """Stream a Pipeline artifact (zip) into the ``artifacts`` category."""
        bid = require_build_id(build_id, field="build_id")
        name = require_name(artifact_name, field="artifact_name")
        if definition_id is not None:
            definition_id = require_build_id(definition_id, field="definition_id")

        destination = resolve_destination(
            output_path,
            build_id=bid,
            resource_name=name,
            default_dir=self.tree.build_dir("artifacts", bid),
            suffix=".zip",
        )
        outcome = await self.retriever.retrieve(
            lambda: self.source.open_artifact_stream(bid, name, definition_id),
            destination,
            record_name=name,
            record_type="Artifact",
            is_temporary=self.tree.contains(destination),
        )
        return {
            "status": "ok",
            "message": f'Successfully downloaded artifact "{name}"',
            **outcome.to_dict(),
            "artifact_details": {"artifact_name": name, "format": "ZIP archive"},
        }


def _stage_job_filename(
    build_id: int,
    stage: TimelineRecord,
    job: TimelineRecord,
    log_id: int,
    used: set[str],
) -> str:
    filename = synthesize_filename(build_id, f"{stage.name}-{job.name}")
    if filename in used:
        filename = synthesize_filename(build_id, f"{stage.name}-{job.name}-{log_id}")
    used.add(filename)
    return filename
