"""Push-event channel capability injected into the session façade."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Protocol, Set

from ..errors import AmbuwatchError
from ..identity import canonical_identity

log = logging.getLogger("ambuwatch.events")

SESSION_DATA_ADDED = "session_data_added"
SESSION_DATA_DELETED = "session_data_deleted"
SESSION_EVENTS = (SESSION_DATA_ADDED, SESSION_DATA_DELETED)

EventHandler = Callable[[Any], None]


class ChannelError(AmbuwatchError):
    """The push channel could not attach, detach or join a room."""


class Subscription:
    """Disposable handle returned by :meth:`PushChannel.subscribe`."""

    def __init__(self, event: str, dispose: Callable[[], None]) -> None:
        self.event = event
        self._dispose = dispose
        self.active = True

    def dispose(self) -> None:
        if not self.active:
            return
        self.active = False
        self._dispose()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()


class PushChannel(Protocol):
    def subscribe(self, event: str, handler: EventHandler) -> Subscription: ...

    def join(self, session_id: Any) -> None: ...

    def leave(self, session_id: Any) -> None: ...


class LocalEventChannel:
    """In-process fan-out channel, also used to relay events received over HTTP."""

    def __init__(self, *, connected: bool = True) -> None:
        self.connected = connected
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._rooms: Set[str] = set()

    @property
    def rooms(self) -> Set[str]:
        return set(self._rooms)

    def subscribe(self, event: str, handler: EventHandler) -> Subscription:
        self._require_connected()
        self._handlers.setdefault(event, []).append(handler)

        def remove() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return Subscription(event, remove)

    def join(self, session_id: Any) -> None:
        self._require_connected()
        key = canonical_identity(session_id)
        if key is not None:
            self._rooms.add(key)

    def leave(self, session_id: Any) -> None:
        key = canonical_identity(session_id)
        if key is not None:
            self._rooms.discard(key)

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: Any) -> int:
        """Deliver an event to every current handler; returns the number reached."""
        handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                log.exception("handler for %s failed", event)
        return len(handlers)

    def _require_connected(self) -> None:
        if not self.connected:
            raise ChannelError("push channel is not connected")
