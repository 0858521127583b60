"""FastAPI application serving the dashboard's session and camera panels."""
from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import AppSettings, Config, setup_logging
from ..errors import AmbuwatchError, BackendError, FailureKind, classify_failure, remediation_message
from ..identity import same_identity
from ..schemas import Artifact
from ..session.facade import SessionFacade
from ..stream.urls import camera_index_for_channel
from ..transport.events import SESSION_EVENTS, LocalEventChannel
from .models import (
    ArtifactModel,
    ArtifactResponse,
    CameraResponse,
    EventRelayResponse,
    FailureResponse,
    HealthResponse,
    MedicationRequest,
    NoteRequest,
    SessionDataResponse,
)

FAILURE_STATUS: Dict[FailureKind, int] = {
    FailureKind.invalid_input: 400,
    FailureKind.credentials_invalid: 409,
    FailureKind.cancelled: 409,
    FailureKind.vendor_login: 502,
    FailureKind.missing_token: 502,
    FailureKind.credential_fetch: 502,
    FailureKind.backend: 502,
    FailureKind.transport: 504,
    FailureKind.unknown: 500,
}


@lru_cache(maxsize=1)
def load_settings() -> AppSettings:
    return Config.load().settings()


@lru_cache(maxsize=1)
def build_channel() -> LocalEventChannel:
    return LocalEventChannel()


@lru_cache(maxsize=1)
def build_facade() -> SessionFacade:
    return SessionFacade.from_settings(load_settings(), build_channel())


async def get_facade() -> AsyncIterator[SessionFacade]:
    yield build_facade()


async def get_channel() -> AsyncIterator[LocalEventChannel]:
    yield build_channel()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging(load_settings().logging)
    yield
    if build_facade.cache_info().currsize:
        await build_facade().aclose()


app = FastAPI(title="AmbuWatch API", version=__version__, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AmbuwatchError)
async def failure_handler(request: Request, exc: AmbuwatchError) -> JSONResponse:
    kind = classify_failure(exc)
    status = FAILURE_STATUS.get(kind, 500)
    if isinstance(exc, BackendError) and exc.status in (400, 403, 404):
        status = exc.status
    body = FailureResponse(
        kind=kind,
        message=exc.message,
        remediation=remediation_message(kind),
        retryable=exc.retryable,
    )
    return JSONResponse(status_code=status, content=body.model_dump(mode="json"))


@app.get("/health", response_model=HealthResponse)
async def health(facade: SessionFacade = Depends(get_facade)) -> HealthResponse:
    return HealthResponse(session_id=facade.session_id, push_enabled=facade.push_enabled)


@app.post("/sessions/{session_id}/open", response_model=SessionDataResponse)
async def open_session(session_id: str, facade: SessionFacade = Depends(get_facade)) -> SessionDataResponse:
    store = await facade.open(session_id)
    return _session_data(facade, store)


@app.post("/sessions/{session_id}/close", response_model=HealthResponse)
async def close_session(session_id: str, facade: SessionFacade = Depends(get_facade)) -> HealthResponse:
    _require_session(facade, session_id)
    await facade.close(session_id)
    return HealthResponse(session_id=facade.session_id, push_enabled=facade.push_enabled)


@app.get("/sessions/{session_id}/artifacts", response_model=SessionDataResponse)
async def session_artifacts(
    session_id: str,
    refresh: bool = False,
    facade: SessionFacade = Depends(get_facade),
) -> SessionDataResponse:
    _require_session(facade, session_id)
    store = await facade.refresh() if refresh else facade.store
    return _session_data(facade, store)


@app.post("/sessions/{session_id}/notes", response_model=ArtifactResponse, status_code=201)
async def add_note(
    session_id: str,
    payload: NoteRequest,
    facade: SessionFacade = Depends(get_facade),
) -> ArtifactResponse:
    _require_session(facade, session_id)
    artifact = await facade.add_note(payload.text)
    return _artifact_response(facade, artifact)


@app.post("/sessions/{session_id}/medications", response_model=ArtifactResponse, status_code=201)
async def add_medication(
    session_id: str,
    payload: MedicationRequest,
    facade: SessionFacade = Depends(get_facade),
) -> ArtifactResponse:
    _require_session(facade, session_id)
    artifact = await facade.add_medication(payload.name, payload.dosage, payload.route)
    return _artifact_response(facade, artifact)


@app.delete("/sessions/{session_id}/artifacts/{artifact_id}", response_model=SessionDataResponse)
async def delete_artifact(
    session_id: str,
    artifact_id: str,
    facade: SessionFacade = Depends(get_facade),
) -> SessionDataResponse:
    _require_session(facade, session_id)
    await facade.delete_artifact(artifact_id)
    return _session_data(facade, facade.store)


@app.get("/sessions/{session_id}/camera", response_model=CameraResponse)
async def camera_url(
    session_id: str,
    device_id: str,
    camera_index: Optional[int] = None,
    channel: Optional[int] = None,
    force: bool = False,
    facade: SessionFacade = Depends(get_facade),
) -> CameraResponse:
    _require_session(facade, session_id)
    if camera_index is None:
        camera_index = camera_index_for_channel(channel) if channel is not None else 0
    url = await facade.get_camera_playback_url(device_id, camera_index, force=force)
    return CameraResponse(device_id=device_id, camera_index=camera_index, url=url)


@app.post("/events/{event_name}", response_model=EventRelayResponse, status_code=202)
async def relay_event(
    event_name: str,
    payload: Dict[str, Any] = Body(...),
    channel: LocalEventChannel = Depends(get_channel),
) -> EventRelayResponse:
    if event_name not in SESSION_EVENTS:
        raise HTTPException(status_code=404, detail=f"Unknown event: {event_name}")
    delivered = channel.emit(event_name, payload)
    return EventRelayResponse(event=event_name, delivered=delivered)


def _require_session(facade: SessionFacade, session_id: str) -> None:
    if not same_identity(facade.session_id, session_id):
        raise HTTPException(status_code=409, detail=f"Session {session_id} is not open")


def _session_data(facade: SessionFacade, store) -> SessionDataResponse:
    error = facade.fetch_error
    return SessionDataResponse.from_store(
        store,
        push_enabled=facade.push_enabled,
        fetch_error=error.message if error else None,
    )


def _artifact_response(facade: SessionFacade, artifact: Artifact) -> ArtifactResponse:
    return ArtifactResponse(
        artifact=ArtifactModel(**artifact.to_payload()),
        counts=facade.store.counts,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ambuwatch.api.main:app", host="127.0.0.1", port=8012, reload=False, log_level="info")
