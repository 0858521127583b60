"""Async REST client for the dashboard backend."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import BackendSettings
from ..errors import BackendError
from ..identity import canonical_identity
from ..schemas import ArtifactKind, DeviceStreamResponse, FileUpload

log = logging.getLogger("ambuwatch.backend")


class BackendClient:
    """Thin wrapper over ``httpx.AsyncClient``; every failure becomes a :class:`BackendError`."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: BackendSettings, **kwargs: Any) -> "BackendClient":
        return cls(settings.base_url, token=settings.token, timeout=settings.timeout, **kwargs)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def fetch_device_stream(self, device_id: Any) -> DeviceStreamResponse:
        body = await self._json("GET", f"/ambulances/devices/{_segment(device_id)}/stream")
        return DeviceStreamResponse.model_validate(body if isinstance(body, dict) else {})

    async def fetch_session_data(self, session_id: Any) -> Any:
        return await self._json("GET", f"/sessions/{_segment(session_id)}/data")

    async def add_artifact(self, session_id: Any, kind: ArtifactKind, content: Dict[str, Any]) -> Any:
        return await self._json(
            "POST",
            f"/sessions/{_segment(session_id)}/data",
            json={"dataType": kind.value, "content": content},
        )

    async def upload_file(self, session_id: Any, upload: FileUpload) -> Any:
        return await self._json(
            "POST",
            f"/sessions/{_segment(session_id)}/data/upload",
            files={"file": (upload.filename, upload.data, upload.mimetype)},
        )

    async def delete_artifact(self, session_id: Any, artifact_id: Any) -> Any:
        return await self._json("DELETE", f"/sessions/{_segment(session_id)}/data/{_segment(artifact_id)}")

    async def download_file(self, session_id: Any, artifact_id: Any) -> bytes:
        response = await self._request(
            "GET", f"/sessions/{_segment(session_id)}/data/files/{_segment(artifact_id)}/download"
        )
        return response.content

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError as exc:
            raise BackendError(f"Backend returned a non-JSON response for {path}", response.status_code) from exc
        if isinstance(body, dict) and body.get("success") is False:
            raise BackendError(body.get("message") or f"Backend rejected {method} {path}", response.status_code)
        return body

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            log.warning("backend %s %s failed: %s", method, path, exc)
            raise BackendError(f"Backend unreachable: {exc}") from exc
        if response.is_error:
            raise BackendError(_error_message(response), response.status_code)
        return response


def _segment(value: Any) -> str:
    canonical = canonical_identity(value)
    if canonical is None:
        raise BackendError("identifier is required")
    return canonical


def _error_message(response: httpx.Response) -> str:
    message: Optional[str] = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
    return message or f"Backend request failed with status {response.status_code}"
