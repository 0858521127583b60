"""Merge optimistic writes, server confirmations and push-events into one store.

Every operation here is total: malformed or unknown input leaves the store
untouched instead of raising. Each artifact identity moves through
``absent -> pending -> confirmed -> deleted``; deleted permanent identities
are remembered as tombstones for the life of the session, so a
redelivered "added" event cannot bring them back.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Set

from pydantic import BaseModel, ValidationError

from ..identity import Confirmed, Pending, canonical_identity
from ..schemas import CONTENT_MODELS, AddedBy, Artifact, ArtifactKind
from .normalize import deleted_event_identity, normalize_artifact, normalize_snapshot
from .store import SessionArtifactStore

log = logging.getLogger("ambuwatch.artifacts")


class PushEventKind(str, Enum):
    added = "added"
    deleted = "deleted"

    @classmethod
    def parse(cls, raw: Any) -> Optional["PushEventKind"]:
        if isinstance(raw, PushEventKind):
            return raw
        tag = str(raw).strip().lower()
        if tag in ("added", "session_data_added"):
            return cls.added
        if tag in ("deleted", "session_data_deleted"):
            return cls.deleted
        return None


class ArtifactReconciler:
    def __init__(self, store: SessionArtifactStore) -> None:
        self.store = store
        self._tombstones: Set[str] = set()
        # pending token -> permanent identity, held until its confirmation arrives
        self._promoted: Dict[str, str] = {}

    def apply_optimistic_write(
        self,
        kind: ArtifactKind | str,
        payload: Any,
        *,
        added_by: AddedBy | str | None = None,
    ) -> Optional[Pending]:
        """Insert a pending artifact at the head of its sequence and return its identity."""
        resolved = ArtifactKind.parse(kind)
        if resolved is None:
            log.debug("optimistic write for unknown kind %r ignored", kind)
            return None
        try:
            content = self._content(resolved, payload)
        except ValidationError as exc:
            log.debug("optimistic %s write ignored: %s", resolved.value, exc)
            return None
        identity = Pending.new()
        self.store.insert_head(
            Artifact(
                id=identity,
                kind=resolved,
                content=content,
                added_by=AddedBy.coerce(added_by),
                added_at=datetime.now(timezone.utc).isoformat(),
            )
        )
        return identity

    def apply_server_confirmation(
        self,
        kind: ArtifactKind | str,
        temporary_id: Pending,
        confirmed: Any,
    ) -> bool:
        """Swap a pending entry for its confirmed version in place.

        Returns ``True`` when the store changed. A confirmation whose pending
        entry is gone (deleted, rolled back or already promoted) is dropped.
        """
        resolved = ArtifactKind.parse(kind)
        if resolved is None or not isinstance(temporary_id, Pending):
            return False
        self._promoted.pop(temporary_id.token, None)
        artifact = normalize_artifact(confirmed, kind_hint=resolved)
        index = self.store.index_of(resolved, temporary_id)
        if index is None:
            log.debug("confirmation for %s discarded, pending entry no longer present", temporary_id)
            return False
        if artifact is None or artifact.kind is not resolved:
            log.debug("confirmation for %s carried no usable artifact", temporary_id)
            return False
        if artifact.key in self._tombstones:
            self.store.remove_at(resolved, index)
            return True
        existing = self.store.index_of(resolved, artifact.id)
        if existing is not None:
            # a push-event already materialised the permanent entry
            self.store.remove_at(resolved, index)
            return True
        self.store.replace_at(resolved, index, artifact)
        return True

    def apply_push_event(self, event_kind: PushEventKind | str, payload: Any) -> bool:
        """Apply one push-event; returns ``True`` when the store changed."""
        resolved = PushEventKind.parse(event_kind)
        if resolved is PushEventKind.added:
            return self._apply_added(payload)
        if resolved is PushEventKind.deleted:
            return self._apply_deleted(payload)
        log.debug("push-event %r ignored", event_kind)
        return False

    def discard_pending(self, temporary_id: Pending) -> bool:
        """Roll back an optimistic write the backend rejected."""
        self._promoted.pop(temporary_id.token, None)
        found = self.store.locate(temporary_id)
        if found is None:
            return False
        self.store.remove_at(*found)
        return True

    def load_snapshot(self, body: Any) -> None:
        """Merge an initial full fetch with whatever arrived while it was in flight.

        Entries already in the store but absent from the snapshot are newer
        (pending writes or push-events) and stay at the head.
        """
        grouped = normalize_snapshot(body)
        for kind, fetched in grouped.items():
            fetched_keys = {artifact.key for artifact in fetched}
            newer = [artifact for artifact in self.store.sequence(kind) if artifact.key not in fetched_keys]
            merged = list(newer)
            seen = {artifact.key for artifact in merged if not artifact.pending}
            for artifact in fetched:
                if artifact.key in self._tombstones or artifact.key in seen:
                    continue
                pending_index = _oldest_pending_in(merged, artifact)
                if pending_index is not None:
                    self._promote(merged[pending_index], artifact)
                    merged[pending_index] = artifact
                else:
                    merged.append(artifact)
                seen.add(artifact.key)
            self.store.reset(kind, merged)

    def is_deleted(self, identity: Any) -> bool:
        return canonical_identity(identity) in self._tombstones

    def _apply_added(self, payload: Any) -> bool:
        artifact = normalize_artifact(payload)
        if artifact is None:
            return False
        if artifact.key in self._tombstones:
            log.debug("added event for deleted %s ignored", artifact.key)
            return False
        if self.store.index_of(artifact.kind, artifact.id) is not None:
            return False
        sequence = self.store.sequence(artifact.kind)
        pending_index = _oldest_pending_in(sequence, artifact)
        if pending_index is not None:
            self._promote(sequence[pending_index], artifact)
            self.store.replace_at(artifact.kind, pending_index, artifact)
            return True
        self.store.insert_head(artifact)
        return True

    def _apply_deleted(self, payload: Any) -> bool:
        identity = deleted_event_identity(payload) if isinstance(payload, dict) else payload
        key = canonical_identity(identity)
        if key is None:
            return False
        if not isinstance(identity, Pending):
            self._tombstones.add(key)
        found = self.store.locate(identity)
        if found is None:
            return False
        self.store.remove_at(*found)
        return True

    def _promote(self, pending: Artifact, confirmed: Artifact) -> None:
        if isinstance(pending.id, Pending) and isinstance(confirmed.id, Confirmed):
            self._promoted[pending.id.token] = confirmed.id.value

    def promoted_identity(self, temporary_id: Pending) -> Optional[Confirmed]:
        value = self._promoted.get(temporary_id.token)
        return Confirmed(value) if value is not None else None

    @staticmethod
    def _content(kind: ArtifactKind, payload: Any):
        model = CONTENT_MODELS[kind]
        if isinstance(payload, model):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        if kind is ArtifactKind.note and isinstance(payload, str):
            payload = {"text": payload}
        return model.model_validate(payload or {})


def _oldest_pending_in(items: Sequence[Artifact], artifact: Artifact) -> Optional[int]:
    fingerprint = artifact.fingerprint()
    for index in range(len(items) - 1, -1, -1):
        if items[index].pending and items[index].fingerprint() == fingerprint:
            return index
    return None

