"""Resolve a camera device to an authenticated vendor playback URL.

Resolution is two outbound calls: the backend hands out the device's
vendor credentials, then the vendor's login endpoint exchanges them for a
session token. Failures are raised as classified :class:`StreamError`
subclasses so callers can tell a credential fix from a retry.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from ..config import StreamSettings
from ..errors import (
    BackendError,
    CredentialFetchError,
    CredentialsInvalid,
    InvalidInput,
    MissingToken,
    TransportError,
    VendorLoginError,
    looks_like_bad_credentials,
)
from ..identity import canonical_identity
from ..schemas import DeviceRef, StreamCredential, StreamPlayback
from ..transport.backend import BackendClient
from .urls import build_playback_url

log = logging.getLogger("ambuwatch.stream")

TOKEN_FIELDS = ("jsession", "JSESSIONID", "jsessionId", "jsessionid")


def extract_session_token(body: Any) -> Optional[str]:
    """Pull the vendor session token out of any recognised login response shape."""
    if not isinstance(body, dict):
        return None
    for container in (body, body.get("data")):
        if not isinstance(container, dict):
            continue
        for key in TOKEN_FIELDS:
            value = container.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
                return str(value).strip()
    return None


def _result_code(body: dict) -> Optional[int]:
    raw = body.get("result")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return -1


class StreamCredentialResolver:
    def __init__(
        self,
        backend: BackendClient,
        *,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        vendor_timeout: float = 10.0,
        language: str = "en",
    ) -> None:
        self.backend = backend
        self.vendor_timeout = vendor_timeout
        self.language = language
        self._owns_client = client is None
        # vendor endpoint is cross-origin and unauthenticated; no backend headers
        self._client = client or httpx.AsyncClient(transport=transport, timeout=vendor_timeout)

    @classmethod
    def from_settings(
        cls, backend: BackendClient, settings: StreamSettings, **kwargs: Any
    ) -> "StreamCredentialResolver":
        return cls(
            backend,
            vendor_timeout=settings.vendor_timeout,
            language=settings.player_language,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def resolve_stream_url(
        self,
        device_ref: Any,
        camera_index: int = 0,
        *,
        timeout: float | None = None,
    ) -> StreamPlayback:
        try:
            ref = DeviceRef.coerce(device_ref)
        except ValidationError as exc:
            raise InvalidInput(f"Invalid device reference: {exc}") from exc
        device_id = canonical_identity(ref.id)
        if device_id is None:
            raise InvalidInput("Device reference has no backend device id")
        if isinstance(camera_index, bool) or not isinstance(camera_index, int) or camera_index < 0:
            raise InvalidInput(f"Camera index must be a non-negative integer, got {camera_index!r}", device_id)

        credential = await self._fetch_credentials(device_id)
        token = await self._login(credential, device_id, timeout)
        url = build_playback_url(
            credential.vendor_api_base or "",
            credential.device_external_id or "",
            token,
            camera_index,
            language=self.language,
        )
        log.debug("resolved stream for device %s", device_id)
        return StreamPlayback(
            device_id=device_id,
            device_external_id=credential.device_external_id or "",
            url=url,
            token=token,
        )

    async def _fetch_credentials(self, device_id: str) -> StreamCredential:
        try:
            response = await self.backend.fetch_device_stream(device_id)
        except BackendError as exc:
            raise CredentialFetchError(exc.message, device_id, exc.status) from exc
        if not response.success or response.data is None:
            raise CredentialFetchError(
                response.message or "Failed to fetch device stream credentials", device_id
            )
        credential = response.data
        if not (credential.device_external_id and credential.username and credential.password):
            raise CredentialsInvalid("Camera device missing credentials", device_id)
        if not credential.vendor_api_base:
            raise CredentialFetchError("Camera device has no stream API configured", device_id)
        return credential

    async def _login(self, credential: StreamCredential, device_id: str, timeout: float | None) -> str:
        limit = timeout if timeout is not None else self.vendor_timeout
        params = {"account": credential.username, "password": credential.password}
        try:
            response = await asyncio.wait_for(
                self._client.get(credential.login_url(), params=params, timeout=limit),
                timeout=limit,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransportError(f"Camera API login timed out after {limit:g}s", device_id) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Camera API unreachable: {exc.__class__.__name__}", device_id) from exc

        body: Any = None
        try:
            body = response.json()
        except ValueError:
            body = None
        vendor_message = body.get("message") if isinstance(body, dict) else None

        if response.status_code == 401:
            raise CredentialsInvalid(
                vendor_message or "Camera API rejected the device credentials", device_id, status=401
            )
        if response.status_code >= 500:
            raise TransportError(f"Camera API unavailable (HTTP {response.status_code})", device_id)
        if response.is_error:
            raise VendorLoginError(
                vendor_message or f"Camera API login failed: HTTP {response.status_code}",
                device_id,
                status=response.status_code,
            )
        if not isinstance(body, dict):
            raise MissingToken("Camera API returned an unreadable login response", device_id)

        result = _result_code(body)
        if result is not None and result != 0:
            message = vendor_message or f"Camera API login failed with result code: {result}"
            error = CredentialsInvalid if looks_like_bad_credentials(message) else VendorLoginError
            raise error(message, device_id, result_code=result)

        token = extract_session_token(body)
        if token is None:
            raise MissingToken("Camera API login succeeded but returned no session token", device_id)
        return token
