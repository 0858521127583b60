"""Playback URL composition for the vendor's embedded video player."""
from __future__ import annotations

import re
from typing import Any, Mapping
from urllib.parse import quote, unquote_plus, urlencode, urlsplit, urlunsplit

SELECTOR_PARAMS = ("channel", "chns")
PLAYER_PATH = "/open/player/video.html"
MAX_CHANNELS = 4
CHANNEL_FIELDS = ("channels", "channel_count", "chns", "streams")

_SELECTOR_TEXT = re.compile(r"([?&])(?:channel|chns)=[^&#]*")


def camera_index_for_channel(channel: Any) -> int:
    """Map a 1-based camera channel to the player's 0-based ``chns`` index."""
    try:
        return max(0, int(channel) - 1)
    except (TypeError, ValueError):
        return 0


def detect_channel_count(device: Mapping[str, Any] | None, limit: int = MAX_CHANNELS) -> int:
    """Best-effort number of camera channels a device exposes, clamped to ``1..limit``."""
    if not device:
        return 1
    raw = None
    for key in CHANNEL_FIELDS:
        if device.get(key):
            raw = device[key]
            break
    try:
        count = int(raw) if raw is not None else 1
    except (TypeError, ValueError):
        count = 1
    return min(max(count, 1), limit)


def strip_stream_selectors(url: str) -> str:
    """Remove every ``channel``/``chns`` query parameter, leaving the rest untouched.

    A URL without selector parameters is returned unchanged. Strings that
    are not absolute URLs fall back to a textual strip.
    """
    if not url:
        return ""
    try:
        parts = urlsplit(url)
        if not parts.scheme or not parts.netloc:
            raise ValueError("not an absolute URL")
    except ValueError:
        return _strip_text(url)
    if not parts.query:
        return url
    pieces = [piece for piece in parts.query.split("&") if piece]
    kept = [piece for piece in pieces if unquote_plus(piece.split("=", 1)[0]) not in SELECTOR_PARAMS]
    if len(kept) == len(pieces):
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(kept), parts.fragment))


def _strip_text(url: str) -> str:
    fragment = ""
    if "#" in url:
        url, fragment = url.split("#", 1)
        fragment = "#" + fragment
    cleaned = url
    while True:
        stripped = _SELECTOR_TEXT.sub(r"\1", cleaned)
        stripped = re.sub(r"([?&])&+", r"\1", stripped)
        if stripped == cleaned:
            break
        cleaned = stripped
    cleaned = re.sub(r"[?&]+$", "", cleaned)
    if "?" not in cleaned and "&" in cleaned:
        cleaned = cleaned.replace("&", "?", 1)
    return cleaned + fragment


def select_camera(url: str, camera_index: int) -> str:
    """Strip existing selectors and append the canonical ``channel=1&chns=<index>``."""
    if not url:
        return ""
    base = strip_stream_selectors(url)
    fragment = ""
    if "#" in base:
        base, fragment = base.split("#", 1)
        fragment = "#" + fragment
    separator = "&" if "?" in base else "?"
    if base.endswith(("?", "&")):
        separator = ""
    return f"{base}{separator}channel=1&chns={max(0, int(camera_index))}{fragment}"


def build_playback_url(
    api_base: str,
    device_external_id: str,
    token: str,
    camera_index: int = 0,
    *,
    language: str = "en",
) -> str:
    """Compose ``{apiBase}/open/player/video.html?lang=..&devIdno=..&jsession=..&channel=1&chns=..``."""
    base = strip_stream_selectors(api_base.strip()).rstrip("/")
    query = urlencode(
        [("lang", language), ("devIdno", device_external_id), ("jsession", token)],
        quote_via=quote,
    )
    return select_camera(f"{base}{PLAYER_PATH}?{query}", camera_index)
