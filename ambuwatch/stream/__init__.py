"""Device stream credential resolution and playback URL cache."""
from .cache import StreamUrlCache, StreamUrlCacheEntry
from .resolver import StreamCredentialResolver, extract_session_token
from .urls import (
    build_playback_url,
    camera_index_for_channel,
    detect_channel_count,
    select_camera,
    strip_stream_selectors,
)

__all__ = [
    "StreamCredentialResolver",
    "StreamUrlCache",
    "StreamUrlCacheEntry",
    "build_playback_url",
    "camera_index_for_channel",
    "detect_channel_count",
    "extract_session_token",
    "select_camera",
    "strip_stream_selectors",
]
