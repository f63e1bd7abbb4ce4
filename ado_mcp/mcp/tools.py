"""MCP tool definitions and dispatch logic."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from ado_mcp.errors import DownloadError, ValidationError

from .config import DEFAULT_CLEANUP_HOURS
from .downloads import DownloadService

logger = logging.getLogger(__name__)

# ── Tool catalogue ────────────────────────────────────────────────────────

# Served from the local scratch tree; never touch the network
_ADMIN_TOOLS = frozenset({"list_downloads", "cleanup_downloads", "get_download_location"})

_BUILD_ID_PROP = {
    "type": "integer",
    "description": "The ID of the build (also known as run ID)",
}

_OUTPUT_PATH_PROP = {
    "type": "string",
    "description": (
        "Optional file or directory path where the download should be saved. "
        "A trailing '/' or an existing directory gets a generated file name. "
        "If omitted, saves to the server's managed temporary directory and "
        "returns the full path."
    ),
}

TOOL_DEFINITIONS = [
    {
        "name": "build_get_timeline",
        "description": (
            "Get the timeline for a build — every stage, job and task with "
            "its state, result, log id and duration. Use it to find the exact "
            "names to pass to the download tools."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {"build_id": _BUILD_ID_PROP},
            "required": ["build_id"],
        },
    },
    {
        "name": "build_download_job_logs",
        "description": (
            "Download the log of a specific job from a build by job name. "
            "The job must be completed. Saves the log to a local file and "
            "returns its path, size and the job's duration."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "build_id": _BUILD_ID_PROP,
                "job_name": {
                    "type": "string",
                    "description": (
                        'Exact name of the job (e.g. "GPU and System Diagnostics")'
                    ),
                },
                "output_path": _OUTPUT_PATH_PROP,
            },
            "required": ["build_id", "job_name"],
        },
    },
    {
        "name": "build_download_logs_by_name",
        "description": (
            "Download logs for a stage, job or task by searching for its name "
            "in the build timeline. A stage downloads the logs of every job "
            "beneath it. Fails with the list of candidates when the name is "
            "ambiguous; pass record_type to disambiguate."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "build_id": _BUILD_ID_PROP,
                "name": {
                    "type": "string",
                    "description": (
                        'Name of the stage, job or task (e.g. "Deploy", '
                        '"Publish Pipeline Artifact")'
                    ),
                },
                "output_path": _OUTPUT_PATH_PROP,
                "record_type": {
                    "type": "string",
                    "enum": ["Stage", "Phase", "Job", "Task"],
                    "description": "Optional: only match records of this type",
                },
                "exact_match": {
                    "type": "boolean",
                    "description": (
                        "Exact, case-sensitive name match (default: true). "
                        "false matches case-insensitive substrings."
                    ),
                    "default": True,
                },
            },
            "required": ["build_id", "name"],
        },
    },
    {
        "name": "build_download_artifact",
        "description": (
            "Download a Pipeline artifact (created with PublishPipelineArtifact) "
            "from a build as a ZIP file."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "build_id": _BUILD_ID_PROP,
                "artifact_name": {
                    "type": "string",
                    "description": 'Name of the artifact (e.g. "RenderLogs")',
                },
                "definition_id": {
                    "type": "integer",
                    "description": (
                        "The build definition ID. Looked up from the build "
                        "when omitted."
                    ),
                },
                "output_path": _OUTPUT_PATH_PROP,
            },
            "required": ["build_id", "artifact_name"],
        },
    },
    # ── Scratch directory administration ─────────────────────────────────
    {
        "name": "list_downloads",
        "description": (
            "List all files downloaded to the temporary directory by this "
            "server, including logs and artifacts, with size and age."
        ),
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": "cleanup_downloads",
        "description": "Remove old downloaded files from the temporary directory.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "older_than_hours": {
                    "type": "number",
                    "description": (
                        "Remove files older than this many hours (default: 24). "
                        "0 removes everything."
                    ),
                    "default": DEFAULT_CLEANUP_HOURS,
                },
            },
            "required": [],
        },
    },
    {
        "name": "get_download_location",
        "description": (
            "Get information about the temporary directory where files are "
            "downloaded: path, total size, file count and oldest file."
        ),
        "inputSchema": {"type": "object", "properties": {}, "required": []},
    },
]

TOOL_NAMES = frozenset(d["name"] for d in TOOL_DEFINITIONS)


# ── Dispatch ──────────────────────────────────────────────────────────────


async def dispatch(
    service: DownloadService, name: str, arguments: dict[str, Any] | None
) -> dict[str, Any]:
    """Route a tool call to *service*; ``DownloadError`` becomes a result."""
    arguments = arguments or {}
    start = time.perf_counter()
    logger.info("[mcp:call]   %s  args=%s", name, _summarise(arguments))
    try:
        if name in _ADMIN_TOOLS:
            # Blocking filesystem walk
            result = await asyncio.to_thread(_dispatch_admin, service, name, arguments)
        else:
            result = await _dispatch_build(service, name, arguments)
    except DownloadError as exc:
        result = exc.to_dict()
        result["status"] = "error"
    _log_result(name, result, start)
    return result


def _summarise(args: dict[str, Any], max_len: int = 200) -> str:
    """One-line summary of MCP tool arguments."""
    raw = ", ".join(f"{k}={v!r}" for k, v in args.items())
    return raw[:max_len] + ("…" if len(raw) > max_len else "")


def _log_result(name: str, result: dict[str, Any], start: float) -> None:
    elapsed = int((time.perf_counter() - start) * 1000)
    if "error" in result:
        logger.warning("[mcp:result] %s  ERROR (%dms): %s", name, elapsed, result["error"])
    else:
        logger.info("[mcp:result] %s  %s (%dms)", name, result.get("status", "ok").upper(), elapsed)


def _dispatch_admin(
    service: DownloadService, name: str, arguments: dict[str, Any]
) -> dict[str, Any]:
    match name:
        case "list_downloads":
            return service.list_downloads()
        case "cleanup_downloads":
            hours = arguments.get("older_than_hours")
            return service.cleanup_downloads(
                DEFAULT_CLEANUP_HOURS if hours is None else hours
            )
        case "get_download_location":
            return service.get_download_location()
        case _:
            return {"error": f"Unknown admin tool: {name}", "status": "error"}


async def _dispatch_build(
    service: DownloadService, name: str, arguments: dict[str, Any]
) -> dict[str, Any]:
    match name:
        case "build_get_timeline":
            return await service.get_timeline(arguments.get("build_id"))
        case "build_download_job_logs":
            return await service.download_job_log(
                arguments.get("build_id"),
                arguments.get("job_name"),
                arguments.get("output_path"),
            )
        case "build_download_logs_by_name":
            exact = arguments.get("exact_match")
            return await service.download_by_name(
                arguments.get("build_id"),
                arguments.get("name"),
                output_path=arguments.get("output_path"),
                record_type=arguments.get("record_type"),
                exact=_require_flag(exact, field="exact_match", default=True),
            )
        case "build_download_artifact":
            return await service.download_artifact(
                arguments.get("build_id"),
                arguments.get("artifact_name"),
                output_path=arguments.get("output_path"),
                definition_id=arguments.get("definition_id"),
            )
        case _:
            return {
                "error": f"Unknown tool: {name}",
                "status": "error",
                "available_tools": sorted(TOOL_NAMES),
            }


def _require_flag(value: Any, *, field: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(field, value, "Must be a boolean (true or false).")
    return value
