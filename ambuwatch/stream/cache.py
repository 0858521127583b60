"""Per-device cache of the most recently resolved playback URL."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

from ..identity import canonical_identity

log = logging.getLogger("ambuwatch.stream")


@dataclass(frozen=True, slots=True)
class StreamUrlCacheEntry:
    url: str
    token: str = field(repr=False)
    resolved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class StreamUrlCache:
    """Explicitly invalidated cache; entries never expire on their own.

    Vendor token lifetime is not observable from here, so the only
    invalidation triggers are an authentication failure or a device switch.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, StreamUrlCacheEntry] = {}

    def get(self, device_id: Any) -> StreamUrlCacheEntry | None:
        key = canonical_identity(device_id)
        if key is None:
            return None
        return self._entries.get(key)

    def put(self, device_id: Any, entry: StreamUrlCacheEntry) -> None:
        key = canonical_identity(device_id)
        if key is None:
            raise ValueError("device id is required to cache a stream URL")
        self._entries[key] = entry

    def clear_session(self, device_id: Any) -> bool:
        key = canonical_identity(device_id)
        if key is None or key not in self._entries:
            return False
        del self._entries[key]
        log.info("stream URL for device %s invalidated", key)
        return True

    def clear_all_sessions(self) -> None:
        if self._entries:
            log.info("clearing %d cached stream URL(s)", len(self._entries))
        self._entries.clear()

    def __contains__(self, device_id: Any) -> bool:
        return self.get(device_id) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))
