"""In-memory, most-recent-first collection of one session's artifacts."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..identity import same_identity
from ..schemas import Artifact, ArtifactKind


class SessionArtifactStore:
    """Kind-partitioned artifact sequences with derived counts.

    Only the reconciler mutates the store; readers get tuples so the visible
    sequences cannot be edited behind its back.
    """

    def __init__(self, session_id: Any = None) -> None:
        self.session_id = session_id
        self._items: Dict[ArtifactKind, List[Artifact]] = {kind: [] for kind in ArtifactKind}
        self.revision = 0

    @property
    def notes(self) -> Tuple[Artifact, ...]:
        return tuple(self._items[ArtifactKind.note])

    @property
    def medications(self) -> Tuple[Artifact, ...]:
        return tuple(self._items[ArtifactKind.medication])

    @property
    def files(self) -> Tuple[Artifact, ...]:
        return tuple(self._items[ArtifactKind.file])

    @property
    def counts(self) -> Dict[str, int]:
        return {kind.plural: len(items) for kind, items in self._items.items()}

    def sequence(self, kind: ArtifactKind) -> Tuple[Artifact, ...]:
        return tuple(self._items[kind])

    def __len__(self) -> int:
        return sum(len(items) for items in self._items.values())

    def index_of(self, kind: ArtifactKind, identity: Any) -> Optional[int]:
        for index, artifact in enumerate(self._items[kind]):
            if same_identity(artifact.id, identity):
                return index
        return None

    def locate(self, identity: Any) -> Optional[Tuple[ArtifactKind, int]]:
        """Find an identity in any of the three sequences."""
        for kind in ArtifactKind:
            index = self.index_of(kind, identity)
            if index is not None:
                return kind, index
        return None

    def get(self, identity: Any) -> Optional[Artifact]:
        found = self.locate(identity)
        if found is None:
            return None
        kind, index = found
        return self._items[kind][index]

    # Mutations below are package-internal; the reconciler is the only caller.

    def insert_head(self, artifact: Artifact) -> None:
        self._items[artifact.kind].insert(0, artifact)
        self._changed()

    def replace_at(self, kind: ArtifactKind, index: int, artifact: Artifact) -> None:
        self._items[kind][index] = artifact
        self._changed()

    def remove_at(self, kind: ArtifactKind, index: int) -> Artifact:
        removed = self._items[kind].pop(index)
        self._changed()
        return removed

    def reset(self, kind: ArtifactKind, artifacts: Iterable[Artifact]) -> None:
        self._items[kind] = list(artifacts)
        self._changed()

    def snapshot(self) -> dict:
        return {
            "sessionId": self.session_id,
            "notes": [artifact.to_payload() for artifact in self._items[ArtifactKind.note]],
            "medications": [artifact.to_payload() for artifact in self._items[ArtifactKind.medication]],
            "files": [artifact.to_payload() for artifact in self._items[ArtifactKind.file]],
            "counts": self.counts,
            "revision": self.revision,
        }

    def _changed(self) -> None:
        self.revision += 1
