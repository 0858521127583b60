"""Map every accepted backend/push payload shape onto the internal Artifact record."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..identity import Confirmed, canonical_identity
from ..schemas import CONTENT_MODELS, AddedBy, Artifact, ArtifactKind

log = logging.getLogger("ambuwatch.artifacts")


def _first(mapping: Any, *keys: str) -> Any:
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def unwrap_response(body: Any) -> Any:
    """Strip the ``{success, data}`` envelope, tolerating ``data.data`` nesting."""
    current = body
    for _ in range(2):
        if isinstance(current, dict) and isinstance(current.get("data"), (dict, list)):
            current = current["data"]
        else:
            break
    return current


def _content(kind: ArtifactKind, raw: Any, item: Dict[str, Any]):
    if isinstance(raw, str):
        try:
            decoded = json.loads(raw)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            raw = decoded
        else:
            raw = {"text": raw} if kind is ArtifactKind.note else {}
    if not isinstance(raw, dict):
        raw = {key: value for key, value in item.items() if key not in _ENVELOPE_KEYS}
    return CONTENT_MODELS[kind].model_validate(raw)


_ENVELOPE_KEYS = {
    "id", "dataId", "_id", "dataType", "type", "data_type", "sessionId", "session_id",
    "addedBy", "added_by", "addedAt", "added_at", "createdAt", "created_at", "updatedAt", "updated_at",
}


def _added_by(raw: Any) -> Optional[AddedBy]:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return AddedBy(id=canonical_identity(raw))
    return AddedBy.coerce(raw)


def normalize_artifact(raw: Any, kind_hint: ArtifactKind | None = None) -> Optional[Artifact]:
    """Return the canonical artifact, or ``None`` when the payload cannot denote one."""
    if isinstance(raw, Artifact):
        return raw
    if not isinstance(raw, dict):
        return None
    item = raw
    nested = item.get("data")
    if isinstance(nested, dict) and _first(item, "id", "dataId", "_id") is None:
        item = nested
    tag = _first(item, "dataType", "type", "data_type")
    kind = ArtifactKind.parse(tag) if tag is not None else kind_hint
    if kind is None:
        log.debug("ignoring artifact with unrecognised kind %r", tag)
        return None
    identity = Confirmed.of(_first(item, "id", "dataId", "_id"))
    if identity is None:
        log.debug("ignoring %s artifact without identity", kind.value)
        return None
    try:
        content = _content(kind, item.get("content"), item)
        added_by = _added_by(_first(item, "addedBy", "added_by"))
    except ValidationError as exc:
        log.debug("ignoring malformed %s artifact %s: %s", kind.value, identity, exc)
        return None
    added_at = _first(item, "addedAt", "added_at", "createdAt", "created_at")
    return Artifact(
        id=identity,
        kind=kind,
        content=content,
        added_by=added_by,
        added_at=str(added_at) if added_at is not None else None,
    )


def normalize_snapshot(body: Any) -> Dict[ArtifactKind, List[Artifact]]:
    """Group an initial full fetch into per-kind sequences, most recent first as received."""
    data = unwrap_response(body)
    grouped: Dict[ArtifactKind, List[Artifact]] = {kind: [] for kind in ArtifactKind}
    if isinstance(data, list):
        for entry in data:
            artifact = normalize_artifact(entry)
            if artifact is not None:
                grouped[artifact.kind].append(artifact)
        return grouped
    if not isinstance(data, dict):
        return grouped
    for kind in ArtifactKind:
        entries = data.get(kind.plural)
        if entries is None:
            entries = data.get(kind.value)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            artifact = normalize_artifact(entry, kind_hint=kind)
            if artifact is not None and artifact.kind is kind:
                grouped[kind].append(artifact)
    return grouped


def event_session_id(envelope: Any) -> Any:
    if not isinstance(envelope, dict):
        return None
    session_id = envelope.get("sessionId")
    if session_id is None:
        session_id = _first(envelope.get("data"), "sessionId", "session_id")
    return session_id


def added_event_item(envelope: Any) -> Any:
    if not isinstance(envelope, dict):
        return None
    data = envelope.get("data")
    return data if isinstance(data, dict) else envelope


def deleted_event_identity(envelope: Any) -> Any:
    identity = _first(envelope, "id", "dataId", "deletedId")
    if identity is None:
        identity = _first(envelope.get("data") if isinstance(envelope, dict) else None, "id", "dataId")
    return identity
