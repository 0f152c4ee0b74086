"""HTTP client for the remote execution service.

The service accepts ``POST /api/execute`` with ``{"name", "arguments"}`` and
answers ``{"result": ...}`` on success or ``{"error": "..."}`` otherwise.  It
also serves its catalog of remote operations from ``GET /api/tools``.
"""

from __future__ import annotations

import json
from typing import Any, List, Protocol

import httpx

from .operations import ExecutionLocation, OperationDefinition, definition_from_mapping
from .types import OperationCall

_BODY_PREVIEW = 500


class RemoteExecutionError(RuntimeError):
    """The remote service could not be reached or reported a failure."""


class ResponseParseError(RemoteExecutionError):
    """The remote service answered with a body that is not valid JSON."""


class RemoteTransport(Protocol):
    async def execute(self, call: OperationCall) -> Any:
        """Run ``call`` remotely and return its result."""


class HttpTransport:
    """:class:`RemoteTransport` implementation on top of ``httpx``."""

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        *,
        timeout: float | None = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)

    async def execute(self, call: OperationCall) -> Any:
        try:
            response = await self._request("POST", "/api/execute", json=call.to_dict())
        except httpx.HTTPError as exc:
            raise RemoteExecutionError(f"Remote execution of '{call.name}' failed: {exc}") from exc

        text = response.text
        try:
            payload = json.loads(text) if text else None
        except json.JSONDecodeError as exc:
            raise ResponseParseError(
                f"Could not parse response from remote service. Status: {response.status_code}. "
                f"Response body: {text[:_BODY_PREVIEW]}"
            ) from exc

        error = payload.get("error") if isinstance(payload, dict) else None
        if not response.is_success:
            raise RemoteExecutionError(error or f"Server responded with status {response.status_code}")
        if error and "result" not in payload:
            raise RemoteExecutionError(str(error))
        if isinstance(payload, dict) and "result" in payload:
            return payload["result"]
        return payload

    async def fetch_catalog(self) -> List[OperationDefinition]:
        """Return the remote operations currently offered by the service."""

        try:
            response = await self._request("GET", "/api/tools")
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise RemoteExecutionError(f"Could not fetch remote catalog: {exc}") from exc
        if not isinstance(payload, list):
            raise ResponseParseError("Remote catalog must be a JSON array")
        return [
            definition_from_mapping(item, location=ExecutionLocation.REMOTE)
            for item in payload
            if isinstance(item, dict)
        ]


__all__ = ["HttpTransport", "RemoteExecutionError", "RemoteTransport", "ResponseParseError"]
