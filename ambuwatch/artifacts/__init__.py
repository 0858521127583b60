"""Session artifact store and reconciliation."""
from .reconciler import ArtifactReconciler, PushEventKind
from .store import SessionArtifactStore

__all__ = ["ArtifactReconciler", "PushEventKind", "SessionArtifactStore"]
