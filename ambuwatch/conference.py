"""Bridge to the embedded video-conference widget.

The widget itself is an opaque capability; this module only knows the
commands it accepts and the events it emits, and keeps the connection
status the dashboard shows next to the call panel.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from .errors import InvalidInput

log = logging.getLogger("ambuwatch.conference")

COMMANDS = frozenset(
    {"displayName", "subject", "hangup", "toggleAudio", "toggleVideo", "toggleShareScreen", "toggleChat"}
)
EVENTS = (
    "videoConferenceJoined",
    "videoConferenceLeft",
    "participantJoined",
    "participantLeft",
    "errorOccurred",
)

Listener = Callable[[Any], None]


class ConferenceWidget(Protocol):
    def execute_command(self, name: str, *args: Any) -> None: ...

    def add_event_listener(self, event: str, listener: Listener) -> None: ...

    def dispose(self) -> None: ...


class ConnectionStatus(str, Enum):
    idle = "idle"
    connecting = "connecting"
    connected = "connected"
    disconnected = "disconnected"
    error = "error"


@dataclass
class ConferenceState:
    status: ConnectionStatus = ConnectionStatus.idle
    joined: bool = False
    participants: Set[str] = field(default_factory=set)
    error: Optional[str] = None

    @property
    def participant_count(self) -> int:
        return len(self.participants)


class ConferenceBridge:
    def __init__(self, widget: ConferenceWidget) -> None:
        self.widget = widget
        self.state = ConferenceState(status=ConnectionStatus.connecting)
        self._disposed = False
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}
        for event in EVENTS:
            widget.add_event_listener(event, self._dispatcher(event))

    def start(self, display_name: str | None, subject: str) -> None:
        """Apply the initial display name and room subject."""
        self.command("displayName", (display_name or "").strip() or "Anonymous User")
        self.command("subject", subject)

    def command(self, name: str, *args: Any) -> None:
        if name not in COMMANDS:
            raise InvalidInput(f"Unsupported conference command: {name}")
        self.widget.execute_command(name, *args)

    def on(self, event: str, listener: Listener) -> Callable[[], None]:
        if event not in self._listeners:
            raise InvalidInput(f"Unsupported conference event: {event}")
        self._listeners[event].append(listener)

        def remove() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return remove

    def leave(self) -> None:
        """Hang up if joined and release the widget."""
        if self.state.joined:
            self.command("hangup")
        self.state = ConferenceState()
        self._disposed = True
        self.widget.dispose()

    def _dispatcher(self, event: str) -> Listener:
        def dispatch(payload: Any = None) -> None:
            if self._disposed:
                return
            self._apply(event, payload)
            for listener in list(self._listeners[event]):
                listener(payload)

        return dispatch

    def _apply(self, event: str, payload: Any) -> None:
        state = self.state
        if event == "videoConferenceJoined":
            state.joined = True
            state.status = ConnectionStatus.connected
            state.error = None
        elif event == "videoConferenceLeft":
            state.joined = False
            state.status = ConnectionStatus.disconnected
            state.participants.clear()
        elif event == "participantJoined":
            participant = _participant_id(payload)
            if participant:
                state.participants.add(participant)
        elif event == "participantLeft":
            participant = _participant_id(payload)
            if participant:
                state.participants.discard(participant)
        elif event == "errorOccurred":
            state.status = ConnectionStatus.error
            state.error = _error_message(payload)
            log.warning("conference error: %s", state.error)


def _participant_id(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        value = payload.get("id") or payload.get("participantId")
        return str(value) if value else None
    return str(payload) if payload else None


def _error_message(payload: Any) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if payload.get("message"):
            return str(payload["message"])
    return "Video call error occurred"
