"""Deterministic artifact keys.

Keys depend only on the video id, the artifact kind and the profile or segment
name, so a redelivered job overwrites what an earlier attempt uploaded.
"""

from __future__ import annotations

from pathlib import PurePosixPath

HLS_PLAYLIST_NAME = "playlist.m3u8"
DASH_MANIFEST_NAME = "manifest.mpd"

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/mp2t",
    ".mpd": "application/dash+xml",
    ".m4s": "video/mp4",
    ".jpg": "image/jpeg",
}


def rendition_key(video_id: str, profile: str) -> str:
    return f"videos/{video_id}/{profile}.mp4"


def hls_key(video_id: str, filename: str = HLS_PLAYLIST_NAME) -> str:
    return f"streams/{video_id}/hls/{filename}"


def dash_key(video_id: str, filename: str = DASH_MANIFEST_NAME) -> str:
    return f"streams/{video_id}/dash/{filename}"


def thumbnail_key(video_id: str, index: int) -> str:
    return f"thumbnails/{video_id}/thumb_{index}.jpg"


def preview_key(video_id: str) -> str:
    return f"previews/{video_id}/preview.mp4"


def content_type_for(key: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(key).suffix.lower(), "application/octet-stream")
