"""Pydantic models exposed via the FastAPI application."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..artifacts.store import SessionArtifactStore
from ..errors import FailureKind


class HealthResponse(BaseModel):
    status: str = Field(default="ok")
    session_id: Optional[str] = None
    push_enabled: bool = False


class ArtifactModel(BaseModel):
    id: str
    dataType: str
    pending: bool = False
    content: Dict[str, Any] = Field(default_factory=dict)
    addedBy: Optional[Dict[str, Any]] = None
    addedAt: Optional[str] = None


class SessionDataResponse(BaseModel):
    session_id: str
    notes: List[ArtifactModel]
    medications: List[ArtifactModel]
    files: List[ArtifactModel]
    counts: Dict[str, int]
    revision: int
    push_enabled: bool = False
    fetch_error: Optional[str] = None

    @classmethod
    def from_store(
        cls,
        store: SessionArtifactStore,
        *,
        push_enabled: bool = False,
        fetch_error: Optional[str] = None,
    ) -> "SessionDataResponse":
        snapshot = store.snapshot()
        return cls(
            session_id=str(store.session_id),
            notes=snapshot["notes"],
            medications=snapshot["medications"],
            files=snapshot["files"],
            counts=snapshot["counts"],
            revision=snapshot["revision"],
            push_enabled=push_enabled,
            fetch_error=fetch_error,
        )


class NoteRequest(BaseModel):
    text: str = Field(..., examples=["BP stable"])


class MedicationRequest(BaseModel):
    name: str = Field(..., examples=["Aspirin"])
    dosage: str = Field(..., examples=["300mg"])
    route: str = Field(default="oral")


class ArtifactResponse(BaseModel):
    artifact: ArtifactModel
    counts: Dict[str, int]


class CameraResponse(BaseModel):
    device_id: str
    camera_index: int
    url: str


class FailureResponse(BaseModel):
    kind: FailureKind
    message: str
    remediation: str
    retryable: bool


class EventRelayResponse(BaseModel):
    event: str
    delivered: int
