"""Azure DevOps REST client — timelines, log streams and artifact streams.

Only the calls the download tools need.  Every error status becomes a
``RemoteAPIError``; connection failures propagate as ``httpx`` errors and
are reported by ``server.call_tool``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from ado_mcp.errors import RecordNotFound, RemoteAPIError
from ado_mcp.locator import TimelineRecord

from .config import VERSION, Settings, require_remote_settings

logger = logging.getLogger(__name__)


class AzureDevOpsClient:
    """Thin async wrapper over the Build and Pipelines REST APIs.

    The underlying ``httpx.AsyncClient`` is created on first use (so the
    server can start without credentials) and closed by ``close()``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -- Plumbing -----------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            require_remote_settings(self._settings)
            self._client = httpx.AsyncClient(
                headers={"User-Agent": f"ado-mcp/{VERSION}"},
                timeout=self._settings.HTTP_TIMEOUT_S,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        """Close the shared HTTP client.  Called during server shutdown."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth("", self._settings.ADO_PAT)

    def _url(self, path: str) -> str:
        s = self._settings
        return f"{s.organization_url}/{s.ADO_PROJECT}/_apis/{path.lstrip('/')}"

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"api-version": self._settings.ADO_API_VERSION, **extra}

    async def _get_json(self, path: str, operation: str, **params: Any) -> Any:
        client = self._get_client()
        resp = await client.get(self._url(path), params=self._params(**params), auth=self._auth)
        if resp.status_code >= 400:
            raise RemoteAPIError(operation, resp.status_code, resp.text)
        return resp.json()

    @asynccontextmanager
    async def _stream(
        self, url: str, operation: str, *, params: dict | None = None, auth: bool = True
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        client = self._get_client()
        kwargs: dict[str, Any] = {"params": params}
        if auth:
            kwargs["auth"] = self._auth
        async with client.stream("GET", url, **kwargs) as response:
            if response.status_code >= 400:
                body = await response.aread()
                raise RemoteAPIError(
                    operation, response.status_code, body.decode("utf-8", "replace")
                )
            yield response.aiter_bytes(self._settings.DOWNLOAD_CHUNK_SIZE)

    # -- Build API ----------------------------------------------------------

    async def get_timeline(self, build_id: int) -> list[TimelineRecord]:
        """Fetch the latest timeline of *build_id* as parsed records."""
        data = await self._get_json(
            f"build/builds/{build_id}/timeline", f"get the timeline of build {build_id}"
        )
        if not data:
            raise RecordNotFound(f"timeline of build {build_id}", record_type="timeline")
        records = [TimelineRecord.model_validate(r) for r in data.get("records") or []]
        logger.debug("[remote] build %d timeline: %d records", build_id, len(records))
        return records

    async def get_build(self, build_id: int) -> dict[str, Any]:
        return await self._get_json(f"build/builds/{build_id}", f"get build {build_id}")

    def open_log_stream(self, build_id: int, log_id: int):
        """Async context manager yielding the raw bytes of one build log."""
        return self._stream(
            self._url(f"build/builds/{build_id}/logs/{log_id}"),
            f"download log {log_id} of build {build_id}",
            params=self._params(),
        )

    # -- Artifacts ----------------------------------------------------------

    async def get_artifact_url(
        self, build_id: int, artifact_name: str, definition_id: int | None = None
    ) -> str:
        """Return a signed download URL for a Pipeline artifact (zip)."""
        if definition_id is None:
            build = await self.get_build(build_id)
            definition_id = (build.get("definition") or {}).get("id")
            if definition_id is None:
                raise RecordNotFound(
                    f"definition of build {build_id}", record_type="definition"
                )
        data = await self._get_json(
            f"pipelines/{definition_id}/runs/{build_id}/artifacts",
            f"get artifact '{artifact_name}' of build {build_id}",
            artifactName=artifact_name,
            **{"$expand": "signedContent"},
        )
        url = ((data or {}).get("signedContent") or {}).get("url")
        if not url:
            raise RecordNotFound(artifact_name, record_type="artifact")
        return url

    @asynccontextmanager
    async def open_artifact_stream(
        self, build_id: int, artifact_name: str, definition_id: int | None = None
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        """Async context manager yielding the zip bytes of an artifact."""
        url = await self.get_artifact_url(build_id, artifact_name, definition_id)
        # Signed URLs carry their own credentials
        async with self._stream(
            url, f"download artifact '{artifact_name}' of build {build_id}", auth=False
        ) as chunks:
            yield chunks
