"""MCP Server wiring — list_tools, call_tool, logging and stdio entry point.

``main()`` is the composition root: it builds the process's single
``ScratchTree``, registers its teardown hook, and threads it into the
``DownloadService`` the tool handlers close over.
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import httpx
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from ado_mcp.retriever import StreamingRetriever
from ado_mcp.scratch import ScratchTree, register_teardown

from .config import SERVER_NAME, Settings, settings as default_settings
from .downloads import DownloadService
from .remote import AzureDevOpsClient
from .tools import TOOL_DEFINITIONS, dispatch

logger = logging.getLogger(__name__)


# ── Logging ───────────────────────────────────────────────────────────────


class _PlainFormatter(logging.Formatter):
    """Plain-text formatter: ``time LEVEL [logger] message``."""

    def format(self, record: logging.LogRecord) -> str:
        ts = self.formatTime(record, "%Y-%m-%d %H:%M:%S")
        name = record.name.split(".")[-1][:20]
        msg = record.getMessage()
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return f"{ts} {record.levelname:<8s} [{name:>20s}] {msg}"


def configure_logging(s: Settings) -> None:
    """Log to stderr (stdout carries the MCP protocol), plus LOG_FILE if set."""
    level = getattr(logging, s.LOG_LEVEL.upper(), logging.INFO)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(_PlainFormatter())
    handlers: list[logging.Handler] = [stderr_handler]

    if s.LOG_FILE:
        log_path = Path(s.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_path),
            maxBytes=10 * 1024 * 1024,  # 10 MB per file
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(_PlainFormatter())
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# ── Server instance ───────────────────────────────────────────────────────


def create_server(service: DownloadService, s: Settings | None = None) -> Server:
    """Build an MCP ``Server`` whose handlers call into *service*."""
    s = s or default_settings
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Declare all available tools."""
        return [Tool(**defn) for defn in TOOL_DEFINITIONS]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool invocations; every failure becomes a JSON error payload."""
        return [TextContent(type="text", text=await render_tool_call(service, name, arguments, s))]

    return server


async def render_tool_call(
    service: DownloadService,
    name: str,
    arguments: dict[str, Any] | None,
    s: Settings,
) -> str:
    """Run one tool call and serialise its result (or failure) as JSON."""
    try:
        result = await dispatch(service, name, arguments)
        return json.dumps(result, indent=2, default=str)
    except httpx.HTTPStatusError as exc:
        payload = {
            "error": f"Azure DevOps API returned {exc.response.status_code}",
            "detail": exc.response.text[:500],
        }
    except httpx.ConnectError:
        payload = {
            "error": "Cannot connect to Azure DevOps",
            "url": s.organization_url,
            "hint": "Ensure ADO_ORGANIZATION is correct and the network is reachable.",
        }
    except httpx.HTTPError as exc:
        payload = {"error": f"HTTP error talking to Azure DevOps: {exc}"}
    except Exception as exc:
        logger.exception("[mcp:result] %s  crashed", name)
        payload = {"error": str(exc)}
    payload["status"] = "error"
    return json.dumps(payload, indent=2, default=str)


# ── Entry point ───────────────────────────────────────────────────────────


def build_service(s: Settings, tree: ScratchTree) -> tuple[DownloadService, AzureDevOpsClient]:
    client = AzureDevOpsClient(s)
    retriever = StreamingRetriever(
        chunk_size=s.DOWNLOAD_CHUNK_SIZE,
        timeout_s=s.DOWNLOAD_TIMEOUT_S or None,
    )
    return DownloadService(tree, client, retriever), client


async def main(s: Settings | None = None) -> None:
    """Run the MCP server over stdio."""
    s = s or default_settings
    configure_logging(s)

    tree = ScratchTree()
    register_teardown(tree)
    service, client = build_service(s, tree)
    server = create_server(service, s)

    logger.info("[mcp] %s starting (organization=%s)", SERVER_NAME, s.organization_url or "unset")
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await client.close()
