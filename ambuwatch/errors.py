"""Error taxonomy surfaced to dashboard callers."""
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional

import httpx


class FailureKind(str, Enum):
    invalid_input = "invalid_input"
    credential_fetch = "credential_fetch"
    transport = "transport"
    vendor_login = "vendor_login"
    credentials_invalid = "credentials_invalid"
    missing_token = "missing_token"
    cancelled = "cancelled"
    backend = "backend"
    unknown = "unknown"


CREDENTIALS_REMEDIATION = (
    "Camera credentials are incorrect. Please update the device username and password "
    "in ambulance settings."
)
GENERIC_REMEDIATION = "Failed to load camera feed. Please try again."

_CREDENTIAL_PATTERNS = re.compile(
    r"username or password incorrect|incorrect username or password|authentication failed",
    re.IGNORECASE,
)


class AmbuwatchError(Exception):
    """Base class for all errors raised by the package."""

    kind: FailureKind = FailureKind.unknown
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BackendError(AmbuwatchError):
    """A backend REST call failed or reported ``success: false``."""

    kind = FailureKind.backend
    retryable = True

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class StreamError(AmbuwatchError):
    """Base class for stream resolution failures."""

    def __init__(self, message: str, device_id: Any = None) -> None:
        super().__init__(message)
        self.device_id = device_id


class InvalidInput(StreamError):
    kind = FailureKind.invalid_input
    retryable = False


class CredentialFetchError(StreamError):
    kind = FailureKind.credential_fetch
    retryable = True

    def __init__(self, message: str, device_id: Any = None, status: Optional[int] = None) -> None:
        super().__init__(message, device_id)
        self.status = status


class TransportError(StreamError):
    kind = FailureKind.transport
    retryable = True


class VendorLoginError(StreamError):
    kind = FailureKind.vendor_login
    retryable = False

    def __init__(
        self,
        message: str,
        device_id: Any = None,
        result_code: Optional[int] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message, device_id)
        self.result_code = result_code
        self.status = status


class CredentialsInvalid(VendorLoginError):
    kind = FailureKind.credentials_invalid


class MissingToken(StreamError):
    kind = FailureKind.missing_token
    retryable = False


class ResolutionCancelled(StreamError):
    kind = FailureKind.cancelled
    retryable = False


def looks_like_bad_credentials(message: str | None, status: int | None = None) -> bool:
    if status == 401:
        return True
    return bool(message) and _CREDENTIAL_PATTERNS.search(message) is not None


def classify_failure(exc: BaseException) -> FailureKind:
    """Map any exception raised on the stream path to a failure kind."""
    if isinstance(exc, AmbuwatchError):
        if exc.kind in (FailureKind.vendor_login, FailureKind.unknown) and looks_like_bad_credentials(
            exc.message, getattr(exc, "status", None)
        ):
            return FailureKind.credentials_invalid
        return exc.kind
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 401:
            return FailureKind.credentials_invalid
        return FailureKind.transport
    if isinstance(exc, (httpx.TransportError, TimeoutError)):
        return FailureKind.transport
    if looks_like_bad_credentials(str(exc)):
        return FailureKind.credentials_invalid
    return FailureKind.unknown


def remediation_message(kind: FailureKind) -> str:
    if kind is FailureKind.credentials_invalid:
        return CREDENTIALS_REMEDIATION
    return GENERIC_REMEDIATION
