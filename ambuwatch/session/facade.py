"""Composition root for one open ambulance session."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from ..artifacts.normalize import added_event_item, event_session_id, normalize_artifact, unwrap_response
from ..artifacts.reconciler import ArtifactReconciler, PushEventKind
from ..artifacts.store import SessionArtifactStore
from ..config import AppSettings
from ..errors import (
    BackendError,
    CredentialsInvalid,
    InvalidInput,
    ResolutionCancelled,
    StreamError,
)
from ..identity import Pending, canonical_identity, same_identity
from ..schemas import (
    AddedBy,
    Artifact,
    ArtifactKind,
    DeviceRef,
    FileContent,
    FileUpload,
    MedicationInput,
    NoteInput,
)
from ..stream.cache import StreamUrlCache, StreamUrlCacheEntry
from ..stream.resolver import StreamCredentialResolver
from ..stream.urls import CHANNEL_FIELDS, MAX_CHANNELS, detect_channel_count, select_camera
from ..transport.backend import BackendClient
from ..transport.events import SESSION_DATA_ADDED, SESSION_DATA_DELETED, PushChannel, Subscription

log = logging.getLogger("ambuwatch.session")

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


@dataclass
class _OpenSession:
    session_id: str
    store: SessionArtifactStore
    reconciler: ArtifactReconciler
    stream_cache: StreamUrlCache
    subscriptions: List[Subscription] = field(default_factory=list)
    inflight: Dict[str, "asyncio.Task[Any]"] = field(default_factory=dict)
    active_device: Optional[str] = None
    push_enabled: bool = False
    fetch_error: Optional[BackendError] = None
    closed: bool = False


class SessionFacade:
    """Owns the artifact store, reconciler and stream cache of the open session.

    Only one session is open at a time; opening another closes the current
    one first so no subscription outlives its session.
    """

    def __init__(
        self,
        backend: BackendClient,
        resolver: StreamCredentialResolver,
        channel: PushChannel | None = None,
        *,
        actor: AddedBy | str | None = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        max_channels: int = MAX_CHANNELS,
    ) -> None:
        self.backend = backend
        self.resolver = resolver
        self.channel = channel
        self.actor = AddedBy.coerce(actor)
        self.max_upload_bytes = max_upload_bytes
        self.max_channels = max_channels
        self._state: Optional[_OpenSession] = None

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        channel: PushChannel | None = None,
        *,
        backend_transport: Any = None,
        vendor_transport: Any = None,
    ) -> "SessionFacade":
        backend = BackendClient.from_settings(settings.backend, transport=backend_transport)
        resolver = StreamCredentialResolver.from_settings(backend, settings.stream, transport=vendor_transport)
        return cls(
            backend,
            resolver,
            channel,
            actor=settings.session.actor,
            max_upload_bytes=settings.uploads.max_bytes,
            max_channels=settings.stream.max_channels,
        )

    async def aclose(self) -> None:
        if self._state is not None:
            await self.close(self._state.session_id)
        await self.resolver.aclose()
        await self.backend.aclose()

    @property
    def session_id(self) -> Optional[str]:
        return self._state.session_id if self._state else None

    @property
    def store(self) -> SessionArtifactStore:
        return self._require_open().store

    @property
    def stream_cache(self) -> StreamUrlCache:
        return self._require_open().stream_cache

    @property
    def push_enabled(self) -> bool:
        return bool(self._state and self._state.push_enabled)

    @property
    def fetch_error(self) -> Optional[BackendError]:
        return self._state.fetch_error if self._state else None

    async def open(self, session_id: Any) -> SessionArtifactStore:
        key = canonical_identity(session_id)
        if key is None:
            raise InvalidInput("Session id is required")
        if self._state is not None:
            if self._state.session_id == key:
                return self._state.store
            await self.close(self._state.session_id)

        store = SessionArtifactStore(key)
        state = _OpenSession(
            session_id=key,
            store=store,
            reconciler=ArtifactReconciler(store),
            stream_cache=StreamUrlCache(),
        )
        self._state = state
        self._attach(state)
        log.info("session %s opened (push=%s)", key, state.push_enabled)
        try:
            await self._load(state)
        except BackendError as exc:
            state.fetch_error = exc
            log.warning("initial fetch for session %s failed: %s", key, exc.message)
        return store

    async def refresh(self) -> SessionArtifactStore:
        """Re-fetch the full session data; the only update path when push delivery is down."""
        state = self._require_open()
        await self._load(state)
        state.fetch_error = None
        return state.store

    async def close(self, session_id: Any = None) -> bool:
        state = self._state
        if state is None:
            return False
        if session_id is not None and not same_identity(session_id, state.session_id):
            log.warning("close(%s) ignored, open session is %s", session_id, state.session_id)
            return False
        state.closed = True
        self._state = None
        tasks = list(state.inflight.values())
        state.inflight.clear()
        for task in tasks:
            task.cancel()
        self._detach(state)
        state.stream_cache.clear_all_sessions()
        log.info("session %s closed", state.session_id)
        return True

    async def add_artifact(self, kind: ArtifactKind | str, payload: Any) -> Artifact:
        """Optimistically add an artifact, then reconcile it with the backend's answer."""
        state = self._require_open()
        resolved = ArtifactKind.parse(kind)
        if resolved is None:
            raise InvalidInput(f"Invalid data type: {kind!r}. Must be: note, medication, or file")
        content, upload = self._prepare(resolved, payload)

        temporary = state.reconciler.apply_optimistic_write(resolved, content, added_by=self.actor)
        if temporary is None:
            raise InvalidInput(f"Could not record {resolved.value}")
        try:
            if upload is not None:
                body = await self.backend.upload_file(state.session_id, upload)
            else:
                body = await self.backend.add_artifact(state.session_id, resolved, content)
        except (BackendError, asyncio.CancelledError):
            state.reconciler.discard_pending(temporary)
            raise

        confirmed = unwrap_response(body)
        promoted = state.reconciler.promoted_identity(temporary)
        state.reconciler.apply_server_confirmation(resolved, temporary, confirmed)
        artifact = normalize_artifact(confirmed, kind_hint=resolved)
        if artifact is None:
            artifact = state.store.get(temporary) or state.store.get(promoted)
        if artifact is None:
            raise BackendError(f"Backend response did not describe the saved {resolved.value}")
        return artifact

    async def add_note(self, text: str) -> Artifact:
        return await self.add_artifact(ArtifactKind.note, {"text": text})

    async def add_medication(self, name: str, dosage: str, route: str = "oral") -> Artifact:
        return await self.add_artifact(ArtifactKind.medication, {"name": name, "dosage": dosage, "route": route})

    async def upload_file(self, upload: FileUpload) -> Artifact:
        return await self.add_artifact(ArtifactKind.file, upload)

    async def delete_artifact(self, identity: Any) -> bool:
        state = self._require_open()
        if isinstance(identity, Pending):
            raise InvalidInput("Entry is still being saved and cannot be deleted yet")
        if canonical_identity(identity) is None:
            raise InvalidInput("Entry id is required")
        await self.backend.delete_artifact(state.session_id, identity)
        if state.closed:
            return False
        return state.reconciler.apply_push_event(PushEventKind.deleted, identity)

    async def download_file(self, identity: Any) -> bytes:
        state = self._require_open()
        if canonical_identity(identity) is None or isinstance(identity, Pending):
            raise InvalidInput("A saved file id is required")
        return await self.backend.download_file(state.session_id, identity)

    def select_device(self, device_ref: Any) -> Optional[str]:
        """Switch the active camera; other devices' resolutions are cancelled and their URLs dropped."""
        state = self._require_open()
        key = _device_key(device_ref)
        for other in [device for device in state.inflight if device != key]:
            state.inflight.pop(other).cancel()
        for other in [device for device in state.stream_cache if device != key]:
            state.stream_cache.clear_session(other)
        state.active_device = key
        return key

    async def get_camera_playback_url(
        self,
        device_ref: Any,
        camera_index: int = 0,
        *,
        force: bool = False,
        timeout: float | None = None,
    ) -> str:
        state = self._require_open()
        key = _device_key(device_ref)
        if isinstance(camera_index, bool) or not isinstance(camera_index, int) or camera_index < 0:
            raise InvalidInput(f"Camera index must be a non-negative integer, got {camera_index!r}", key)
        limit = self._channel_limit(device_ref)
        if camera_index >= limit:
            raise InvalidInput(f"Camera index {camera_index} exceeds the {limit} supported channels", key)

        if not force:
            entry = state.stream_cache.get(key)
            if entry is not None:
                return select_camera(entry.url, camera_index)

        task = None if force else state.inflight.get(key)
        if task is None:
            previous = state.inflight.pop(key, None)
            if previous is not None:
                previous.cancel()
            task = asyncio.create_task(self._resolve(state, key, device_ref, timeout))
            state.inflight[key] = task
            task.add_done_callback(partial(_forget_inflight, state, key))

        try:
            url = await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise ResolutionCancelled("Camera resolution was cancelled", key) from None
            raise
        return select_camera(url, camera_index)

    async def _resolve(self, state: _OpenSession, key: str, device_ref: Any, timeout: float | None) -> str:
        """Resolve one device and cache its URL; concurrent callers for the device share this task."""
        task = asyncio.current_task()

        def superseded() -> bool:
            return state.closed or state.inflight.get(key) is not task

        try:
            playback = await self.resolver.resolve_stream_url(device_ref, 0, timeout=timeout)
        except StreamError as exc:
            if isinstance(exc, CredentialsInvalid) and not superseded():
                state.stream_cache.clear_session(key)
            log.warning("stream resolution for device %s failed (%s): %s", key, exc.kind.value, exc.message)
            raise
        if superseded():
            log.debug("late stream resolution for device %s discarded", key)
            raise ResolutionCancelled("Camera selection changed before the stream was ready", key)
        state.stream_cache.put(key, StreamUrlCacheEntry(url=playback.url, token=playback.token))
        return playback.url

    def _channel_limit(self, device_ref: Any) -> int:
        if isinstance(device_ref, dict) and any(device_ref.get(name) for name in CHANNEL_FIELDS):
            return detect_channel_count(device_ref, self.max_channels)
        return self.max_channels

    def _require_open(self) -> _OpenSession:
        if self._state is None:
            raise InvalidInput("No session is open")
        return self._state

    def _prepare(self, kind: ArtifactKind, payload: Any):
        if kind is ArtifactKind.file:
            if not isinstance(payload, FileUpload):
                raise InvalidInput("A file upload is required")
            if payload.size > self.max_upload_bytes:
                limit_mb = self.max_upload_bytes // (1024 * 1024)
                raise InvalidInput(f"File size must be less than {limit_mb}MB")
            content = FileContent(filename=payload.filename, mimetype=payload.mimetype, size=payload.size)
            return content.model_dump(by_alias=True, exclude_none=True), payload
        model = NoteInput if kind is ArtifactKind.note else MedicationInput
        if isinstance(payload, str) and kind is ArtifactKind.note:
            payload = {"text": payload}
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        try:
            validated = model.model_validate(payload or {})
        except ValidationError as exc:
            raise InvalidInput(_first_error(exc)) from exc
        return validated.model_dump(), None

    def _attach(self, state: _OpenSession) -> None:
        if self.channel is None:
            log.info("no push channel; session %s runs in fetch-on-demand mode", state.session_id)
            return
        try:
            self.channel.join(state.session_id)
            state.subscriptions.append(
                self.channel.subscribe(SESSION_DATA_ADDED, partial(self._on_event, state, PushEventKind.added))
            )
            state.subscriptions.append(
                self.channel.subscribe(SESSION_DATA_DELETED, partial(self._on_event, state, PushEventKind.deleted))
            )
        except Exception as exc:
            log.warning(
                "push subscription for session %s failed, using fetch-on-demand: %s", state.session_id, exc
            )
            self._detach(state)
            return
        state.push_enabled = True

    def _detach(self, state: _OpenSession) -> None:
        subscriptions, state.subscriptions = state.subscriptions, []
        for subscription in subscriptions:
            try:
                subscription.dispose()
            except Exception as exc:
                log.warning("failed to detach %s listener: %s", subscription.event, exc)
        state.push_enabled = False
        if self.channel is None:
            return
        try:
            self.channel.leave(state.session_id)
        except Exception as exc:
            log.warning("failed to leave session room %s: %s", state.session_id, exc)

    def _on_event(self, state: _OpenSession, kind: PushEventKind, envelope: Any) -> None:
        if state.closed or state is not self._state:
            return
        if not same_identity(event_session_id(envelope), state.session_id):
            log.debug("push-event for another session ignored (open: %s)", state.session_id)
            return
        payload = added_event_item(envelope) if kind is PushEventKind.added else envelope
        state.reconciler.apply_push_event(kind, payload)

    async def _load(self, state: _OpenSession) -> None:
        body = await self.backend.fetch_session_data(state.session_id)
        if not state.closed:
            state.reconciler.load_snapshot(body)


def _device_key(device_ref: Any) -> str:
    try:
        ref = DeviceRef.coerce(device_ref)
    except ValidationError as exc:
        raise InvalidInput(f"Invalid device reference: {exc}") from exc
    key = canonical_identity(ref.id)
    if key is None:
        raise InvalidInput("Device reference has no backend device id")
    return key


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    message = errors[0].get("msg", str(exc))
    return message.removeprefix("Value error, ")



def _forget_inflight(state: _OpenSession, key: str, task: "asyncio.Task[Any]") -> None:
    if state.inflight.get(key) is task:
        del state.inflight[key]
