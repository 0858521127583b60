"""Pydantic schemas and records shared across the artifact and stream services."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .identity import ArtifactIdentity, Pending, canonical_identity


class ArtifactKind(str, Enum):
    note = "note"
    medication = "medication"
    file = "file"

    @property
    def plural(self) -> str:
        return f"{self.value}s"

    @classmethod
    def parse(cls, raw: Any) -> Optional["ArtifactKind"]:
        """Accept singular or plural tags; ``None`` for anything unrecognised."""
        if isinstance(raw, ArtifactKind):
            return raw
        if not isinstance(raw, str):
            return None
        tag = raw.strip().lower()
        for kind in cls:
            if tag in (kind.value, kind.plural):
                return kind
        return None


class AddedBy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[Union[int, str]] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any) -> Optional["AddedBy"]:
        if raw is None:
            return None
        if isinstance(raw, AddedBy):
            return raw
        if isinstance(raw, str):
            return cls(name=raw)
        if isinstance(raw, dict):
            return cls.model_validate(raw)
        return None


class NoteContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: str = ""

    def fingerprint(self) -> Tuple[Any, ...]:
        return (self.text.strip(),)


class MedicationContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    dosage: str = ""
    route: str = "oral"

    def fingerprint(self) -> Tuple[Any, ...]:
        return (self.name.strip().lower(), self.dosage.strip().lower(), self.route.strip().lower())


class FileContent(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    filename: str = ""
    mimetype: Optional[str] = None
    size: Optional[int] = None
    relative_path: Optional[str] = Field(default=None, alias="relativePath")
    uploaded_at: Optional[str] = Field(default=None, alias="uploadedAt")

    def fingerprint(self) -> Tuple[Any, ...]:
        return (self.filename, self.size)


ArtifactContent = Union[NoteContent, MedicationContent, FileContent]

CONTENT_MODELS: Dict[ArtifactKind, type] = {
    ArtifactKind.note: NoteContent,
    ArtifactKind.medication: MedicationContent,
    ArtifactKind.file: FileContent,
}


class NoteInput(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def text_must_not_be_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Please enter a note")
        return value


class MedicationInput(BaseModel):
    name: str
    dosage: str
    route: str = "oral"

    @field_validator("name", "dosage")
    @classmethod
    def must_not_be_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Please enter medication name and dosage")
        return value


@dataclass(frozen=True, slots=True)
class FileUpload:
    filename: str
    data: bytes
    mimetype: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class Artifact:
    """One note, medication record or file attached to a session."""

    id: ArtifactIdentity
    kind: ArtifactKind
    content: ArtifactContent
    added_by: Optional[AddedBy] = None
    added_at: Optional[str] = None

    @property
    def pending(self) -> bool:
        return isinstance(self.id, Pending)

    @property
    def key(self) -> str:
        return canonical_identity(self.id) or ""

    def fingerprint(self) -> Tuple[Any, ...]:
        return (self.kind, self.content.fingerprint())

    def to_payload(self) -> dict:
        return {
            "id": str(self.id),
            "dataType": self.kind.value,
            "pending": self.pending,
            "content": self.content.model_dump(by_alias=True, exclude_none=True),
            "addedBy": self.added_by.model_dump(exclude_none=True) if self.added_by else None,
            "addedAt": self.added_at,
        }


class DeviceRef(BaseModel):
    """Reference to an ambulance camera device as listed by the backend."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: Optional[Union[int, str]] = None
    external_id: Optional[str] = Field(default=None, alias="device_id")
    name: Optional[str] = Field(default=None, alias="device_name")

    @classmethod
    def coerce(cls, raw: Any) -> "DeviceRef":
        if isinstance(raw, DeviceRef):
            return raw
        if isinstance(raw, dict):
            return cls.model_validate(raw)
        return cls(id=raw)


class StreamCredential(BaseModel):
    """Device connection credentials handed out by the backend for one resolution."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    device_external_id: Optional[str] = Field(default=None, alias="deviceId")
    username: Optional[str] = None
    password: Optional[str] = Field(default=None, repr=False)
    vendor_api_base: Optional[str] = Field(default=None, alias="apiBase")
    vendor_login_endpoint: Optional[str] = Field(default=None, alias="loginUrl")

    @field_validator("device_external_id", mode="before")
    @classmethod
    def coerce_external_id(cls, value: Any) -> Any:
        return canonical_identity(value) if value is not None else None

    def login_url(self) -> str:
        if self.vendor_login_endpoint:
            return self.vendor_login_endpoint
        return f"{(self.vendor_api_base or '').rstrip('/')}/StandardApiAction_login.action"


class DeviceStreamResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = False
    message: Optional[str] = None
    data: Optional[StreamCredential] = None


@dataclass(frozen=True, slots=True)
class StreamPlayback:
    """A ready-to-render playback URL and the vendor token that produced it."""

    device_id: str
    device_external_id: str
    url: str
    token: str
