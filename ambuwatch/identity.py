"""Artifact identities and the comparison rule shared by every store in the package.

Server identities arrive as integers or strings depending on the code path
(push events send numbers, URL parameters send text). Client-side
optimistic writes get a :class:`Pending` identity until the backend
assigns a permanent one.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class Pending:
    """Temporary client-generated identity awaiting server confirmation."""

    token: str

    @classmethod
    def new(cls) -> "Pending":
        return cls(token=uuid.uuid4().hex)

    def __str__(self) -> str:
        return f"pending:{self.token}"


@dataclass(frozen=True, slots=True)
class Confirmed:
    """Permanent server-assigned identity, stored in canonical text form."""

    value: str

    @classmethod
    def of(cls, raw: Any) -> "Confirmed | None":
        canonical = canonical_identity(raw)
        if canonical is None:
            return None
        return cls(value=canonical)

    def __str__(self) -> str:
        return self.value


ArtifactIdentity = Union[Pending, Confirmed]


def canonical_identity(value: Any) -> str | None:
    """Coerce an identity to its comparable text form; ``None`` when absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Pending):
        return str(value)
    if isinstance(value, Confirmed):
        return value.value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, str):
        text = value.strip()
        if not text or text.lower() in {"undefined", "null", "none"}:
            return None
        return text
    return None


def same_identity(a: Any, b: Any) -> bool:
    """True when both identities are present and denote the same value."""
    left = canonical_identity(a)
    if left is None:
        return False
    return left == canonical_identity(b)


def is_pending(identity: Any) -> bool:
    return isinstance(identity, Pending)
