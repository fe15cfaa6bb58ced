"""Static table of transcoding quality profiles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import UnknownProfileError


@dataclass(frozen=True, slots=True)
class TranscodeProfile:
    """Encoder settings for one rendition."""

    name: str
    resolution: str
    video_bitrate: str
    audio_bitrate: str
    max_rate: str
    buf_size: str

    @property
    def width(self) -> int:
        return int(self.resolution.split("x")[0])

    @property
    def height(self) -> int:
        return int(self.resolution.split("x")[1])


PROFILES: dict[str, TranscodeProfile] = {
    "360p": TranscodeProfile("360p", "640x360", "800k", "96k", "856k", "1200k"),
    "480p": TranscodeProfile("480p", "854x480", "1400k", "128k", "1498k", "2100k"),
    "720p": TranscodeProfile("720p", "1280x720", "2800k", "128k", "2996k", "4200k"),
    "1080p": TranscodeProfile("1080p", "1920x1080", "5000k", "192k", "5350k", "7500k"),
    "4k": TranscodeProfile("4k", "3840x2160", "15000k", "192k", "16050k", "22500k"),
}

UHD_PROFILES = frozenset({"4k"})


def available_profiles(enable_4k: bool = False) -> list[str]:
    return [name for name in PROFILES if enable_4k or name not in UHD_PROFILES]


def get_profile(name: str, *, enable_4k: Optional[bool] = None) -> TranscodeProfile:
    """Look up a profile, honouring the 4k switch when one is given."""

    profile = PROFILES.get(name)
    if profile is None:
        raise UnknownProfileError(f"Invalid transcoding profile: {name}")
    if enable_4k is False and name in UHD_PROFILES:
        raise UnknownProfileError(f"Profile {name} is disabled")
    return profile
