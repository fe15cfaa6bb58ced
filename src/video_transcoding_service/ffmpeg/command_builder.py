"""Utility functions for constructing FFmpeg command lines."""

from __future__ import annotations

from pathlib import Path

from ..profiles import TranscodeProfile

HLS_SEGMENT_PATTERN = "segment_%03d.ts"
DASH_INIT_SEGMENT_NAME = "init_$RepresentationID$.m4s"
DASH_MEDIA_SEGMENT_NAME = "segment_$RepresentationID$_$Number$.m4s"


def scale_filter(resolution: str) -> str:
    """Letterbox into ``WxH`` while keeping the source aspect ratio."""

    width, height = resolution.split("x")
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1"
    )


def build_transcode_command(
    ffmpeg_binary: str,
    input_path: Path,
    output_path: Path,
    profile: TranscodeProfile,
    *,
    threads: int = 4,
    crf: int = 23,
) -> list[str]:
    """Build the FFmpeg command for one H.264/AAC rendition.

    Args:
        ffmpeg_binary: Executable path for ffmpeg.
        input_path: Source media file.
        output_path: Destination ``.mp4`` file.
        profile: Resolution and bitrate settings for the rendition.
        threads: Encoder thread count, ``0`` lets ffmpeg decide.
        crf: Constant Rate Factor for libx264.
    """

    return [
        ffmpeg_binary,
        "-y",
        "-i",
        str(input_path),
        "-vf",
        scale_filter(profile.resolution),
        "-c:v",
        "libx264",
        "-preset",
        "fast",
        "-crf",
        str(crf),
        "-b:v",
        profile.video_bitrate,
        "-maxrate",
        profile.max_rate,
        "-bufsize",
        profile.buf_size,
        "-c:a",
        "aac",
        "-b:a",
        profile.audio_bitrate,
        "-movflags",
        "+faststart",
        "-threads",
        str(threads),
        "-f",
        "mp4",
        str(output_path),
    ]


def build_hls_command(
    ffmpeg_binary: str,
    input_path: Path,
    playlist_path: Path,
    *,
    segment_duration: int = 10,
    playlist_size: int = 5,
    vod: bool = True,
) -> list[str]:
    """Stream-copy the input into an MPEG-TS segmented HLS playlist.

    With ``vod`` the playlist lists every segment. Without it the playlist is a
    sliding window of ``playlist_size`` entries and older segments are deleted.
    """

    command = [
        ffmpeg_binary,
        "-y",
        "-i",
        str(input_path),
        "-c:v",
        "copy",
        "-c:a",
        "copy",
        "-f",
        "hls",
        "-hls_time",
        str(segment_duration),
        "-hls_segment_type",
        "mpegts",
        "-hls_segment_filename",
        str(playlist_path.parent / HLS_SEGMENT_PATTERN),
    ]
    if vod:
        command.extend(["-hls_list_size", "0", "-hls_playlist_type", "vod"])
    else:
        command.extend(["-hls_list_size", str(playlist_size), "-hls_flags", "delete_segments"])
    command.append(str(playlist_path))
    return command


def build_dash_command(
    ffmpeg_binary: str,
    input_path: Path,
    manifest_path: Path,
    *,
    segment_duration: int = 4,
) -> list[str]:
    """Stream-copy the input into a DASH manifest with timeline + template addressing."""

    return [
        ffmpeg_binary,
        "-y",
        "-i",
        str(input_path),
        "-map",
        "0:v:0",
        "-map",
        "0:a?",
        "-c:v",
        "copy",
        "-c:a",
        "copy",
        "-f",
        "dash",
        "-seg_duration",
        str(segment_duration),
        "-use_timeline",
        "1",
        "-use_template",
        "1",
        "-init_seg_name",
        DASH_INIT_SEGMENT_NAME,
        "-media_seg_name",
        DASH_MEDIA_SEGMENT_NAME,
        str(manifest_path),
    ]


def thumbnail_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced capture points that avoid the first and last frame."""

    if count <= 0:
        return []
    interval = max(duration, 0.0) / (count + 1)
    return [interval * index for index in range(1, count + 1)]


def build_thumbnail_command(
    ffmpeg_binary: str,
    input_path: Path,
    output_path: Path,
    timestamp: float,
    *,
    size: str = "320x180",
) -> list[str]:
    width, height = size.split("x")
    return [
        ffmpeg_binary,
        "-y",
        "-ss",
        f"{timestamp:.3f}",
        "-i",
        str(input_path),
        "-frames:v",
        "1",
        "-vf",
        f"scale={width}:{height}",
        "-q:v",
        "2",
        str(output_path),
    ]


def build_preview_command(
    ffmpeg_binary: str,
    input_path: Path,
    output_path: Path,
    *,
    max_duration: float = 30.0,
    size: str = "640x360",
) -> list[str]:
    """Re-encode the opening ``max_duration`` seconds as a low bitrate clip."""

    return [
        ffmpeg_binary,
        "-y",
        "-i",
        str(input_path),
        "-t",
        f"{max_duration:.3f}",
        "-vf",
        scale_filter(size),
        "-c:v",
        "libx264",
        "-preset",
        "fast",
        "-crf",
        "28",
        "-b:v",
        "1000k",
        "-c:a",
        "aac",
        "-b:a",
        "128k",
        "-movflags",
        "+faststart",
        str(output_path),
    ]
