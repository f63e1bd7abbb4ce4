"""Download runtime error hierarchy.

Every error carries typed fields (not just a message string),
supports ``to_dict()`` for serialisation into an MCP tool result,
and has a readable ``__str__`` for logging.

``kind`` groups errors the way callers react to them: ``validation``
errors are never retried, ``state`` errors may succeed later once the
build finishes, ``transfer`` errors may leave a partial file behind.
"""

from __future__ import annotations


class DownloadError(Exception):
    """Base error for all download / scratch-storage failures."""

    kind: str = "error"

    def __init__(self, message: str, *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "type": type(self).__name__,
            **self.detail,
        }

    def __str__(self) -> str:
        return self.message


class ValidationError(DownloadError):
    """A caller-supplied argument failed a hard precondition."""

    kind = "validation"

    def __init__(self, field: str, value: object, reason: str) -> None:
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(
            f"Invalid {field}: {value!r}. {reason}",
            detail={"field": field, "reason": reason},
        )


class ConfigError(DownloadError):
    """Required configuration is missing or malformed."""

    kind = "config"

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__(
            "Configuration errors:\n" + "\n".join(problems),
            detail={"problems": problems},
        )


class RecordNotFound(DownloadError):
    """No timeline record matched the requested name."""

    kind = "not_found"

    def __init__(
        self,
        name: str,
        *,
        record_type: str | None = None,
        available: list[str] | None = None,
    ) -> None:
        self.name = name
        self.record_type = record_type
        self.available = available or []
        what = record_type or "record"
        msg = f"No {what} named '{name}' found in the build timeline"
        if self.available:
            msg += f". Available: {', '.join(self.available)}"
        detail: dict = {"name": name, "available": self.available}
        if record_type:
            detail["record_type"] = record_type
        super().__init__(msg, detail=detail)


class AmbiguousMatch(DownloadError):
    """More than one timeline record matched an exact lookup."""

    kind = "ambiguous"

    def __init__(self, name: str, candidates: list[str]) -> None:
        self.name = name
        self.candidates = candidates
        super().__init__(
            f"Multiple records match '{name}': {', '.join(candidates)}. "
            "Pass recordType to disambiguate.",
            detail={"name": name, "candidates": candidates},
        )


class RecordStateError(DownloadError):
    """The record has not reached a terminal state yet."""

    kind = "state"

    def __init__(self, name: str, record_id: str, state: str) -> None:
        self.name = name
        self.record_id = record_id
        self.state = state
        super().__init__(
            f"'{name}' is not completed yet (current state: {state})",
            detail={"name": name, "record_id": record_id, "state": state},
        )


class NoLogAvailable(DownloadError):
    """The record exists and is completed but carries no log reference."""

    kind = "no_log"

    def __init__(self, name: str, record_id: str) -> None:
        self.name = name
        self.record_id = record_id
        super().__init__(
            f"No log available for '{name}'",
            detail={"name": name, "record_id": record_id},
        )


class FilesystemError(DownloadError):
    """A filesystem operation failed on a specific path."""

    kind = "filesystem"

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"Filesystem error on '{path}': {reason}",
            detail={"path": path, "reason": reason},
        )


class ScratchInitError(FilesystemError):
    """The per-process scratch root could not be created."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(path, reason)
        self.message = f"Failed to initialize temp directory under '{path}': {reason}"


class TransferFailed(DownloadError):
    """The byte stream failed partway through; a partial file may remain."""

    kind = "transfer"

    def __init__(self, path: str, bytes_written: int, reason: str) -> None:
        self.path = path
        self.bytes_written = bytes_written
        self.reason = reason
        super().__init__(
            f"Download to '{path}' failed after {bytes_written} bytes: {reason}",
            detail={
                "path": path,
                "bytes_written": bytes_written,
                "partial_file_left": bytes_written > 0,
                "reason": reason,
            },
        )


class TransferTimeout(TransferFailed):
    """The transfer exceeded its deadline."""

    def __init__(self, path: str, bytes_written: int, timeout_s: float) -> None:
        self.timeout_s = timeout_s
        super().__init__(path, bytes_written, f"timed out after {timeout_s}s")
        self.detail["timeout_s"] = timeout_s


class RemoteAPIError(DownloadError):
    """The Azure DevOps REST API returned an error status."""

    kind = "api"

    def __init__(self, operation: str, status_code: int, body: str = "") -> None:
        self.operation = operation
        self.status_code = status_code
        self.body = body
        if status_code in (401, 403):
            msg = (
                f"Access denied while trying to {operation}. "
                "Check that ADO_PAT has Build (Read) permission."
            )
        elif status_code == 404:
            msg = f"Resource not found while trying to {operation}"
        else:
            msg = f"Azure DevOps API returned {status_code} while trying to {operation}"
        super().__init__(
            msg,
            detail={
                "operation": operation,
                "status_code": status_code,
                "body": body[:500],
            },
        )
