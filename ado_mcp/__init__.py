"""Azure DevOps download runtime — scratch storage, locator, streaming retriever.

Public API
----------
Scratch storage::

    ScratchTree, ReapReport, reap_orphans, register_teardown

Catalog::

    DownloadCatalog, DownloadRecord, CleanupResult

Locator::

    TimelineRecord, LogReference, StageGroup,
    find_records, locate, locate_subtree, require_downloadable

Retriever::

    StreamingRetriever, RetrievalOutcome, format_duration,
    resolve_destination

Errors::

    DownloadError, ValidationError, ConfigError, RecordNotFound,
    AmbiguousMatch, RecordStateError, NoLogAvailable, FilesystemError,
    ScratchInitError, TransferFailed, TransferTimeout, RemoteAPIError

The MCP server lives in ``ado_mcp.mcp`` (``python -m ado_mcp.mcp``).
"""

from ado_mcp.catalog import CleanupResult, DownloadCatalog, DownloadRecord
from ado_mcp.errors import (
    AmbiguousMatch,
    ConfigError,
    DownloadError,
    FilesystemError,
    NoLogAvailable,
    RecordNotFound,
    RecordStateError,
    RemoteAPIError,
    ScratchInitError,
    TransferFailed,
    TransferTimeout,
    ValidationError,
)
from ado_mcp.locator import (
    LogReference,
    StageGroup,
    TimelineRecord,
    find_records,
    locate,
    locate_subtree,
    require_downloadable,
)
from ado_mcp.retriever import (
    RetrievalOutcome,
    StreamingRetriever,
    format_duration,
    resolve_destination,
)
from ado_mcp.scratch import ReapReport, ScratchTree, reap_orphans, register_teardown

__all__ = [
    # catalog
    "CleanupResult",
    "DownloadCatalog",
    "DownloadRecord",
    # errors
    "AmbiguousMatch",
    "ConfigError",
    "DownloadError",
    "FilesystemError",
    "NoLogAvailable",
    "RecordNotFound",
    "RecordStateError",
    "RemoteAPIError",
    "ScratchInitError",
    "TransferFailed",
    "TransferTimeout",
    "ValidationError",
    # locator
    "LogReference",
    "StageGroup",
    "TimelineRecord",
    "find_records",
    "locate",
    "locate_subtree",
    "require_downloadable",
    # retriever
    "RetrievalOutcome",
    "StreamingRetriever",
    "format_duration",
    "resolve_destination",
    # scratch
    "ReapReport",
    "ScratchTree",
    "reap_orphans",
    "register_teardown",
]
