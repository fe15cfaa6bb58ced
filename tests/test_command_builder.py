from __future__ import annotations

from pathlib import Path

import pytest

from video_transcoding_service.ffmpeg.command_builder import (
    build_dash_command,
    build_hls_command,
    build_preview_command,
    build_thumbnail_command,
    build_transcode_command,
    scale_filter,
    thumbnail_timestamps,
)
from video_transcoding_service.profiles import get_profile


def _value_after(command: list[str], flag: str) -> str:
    return command[command.index(flag) + 1]


def test_build_transcode_command_uses_profile_settings(tmp_path: Path) -> None:
    profile = get_profile("720p")

    command = build_transcode_command(
        "ffmpeg",
        tmp_path / "input.mov",
        tmp_path / "720p.mp4",
        profile,
        threads=2,
    )

    assert command[:4] == ["ffmpeg", "-y", "-i", str(tmp_path / "input.mov")]
    assert _value_after(command, "-vf") == scale_filter("1280x720")
    assert _value_after(command, "-c:v") == "libx264"
    assert _value_after(command, "-b:v") == "2800k"
    assert _value_after(command, "-maxrate") == "2996k"
    assert _value_after(command, "-bufsize") == "4200k"
    assert _value_after(command, "-b:a") == "128k"
    assert _value_after(command, "-threads") == "2"
    assert command[-1].endswith("720p.mp4")


def test_scale_filter_letterboxes_to_target() -> None:
    assert scale_filter("640x360").startswith("scale=640:360:force_original_aspect_ratio=decrease")
    assert "pad=640:360" in scale_filter("640x360")


def test_build_hls_command_vod_keeps_every_segment(tmp_path: Path) -> None:
    playlist = tmp_path / "hls" / "playlist.m3u8"

    command = build_hls_command("ffmpeg", tmp_path / "in.mp4", playlist, segment_duration=6)

    assert _value_after(command, "-f") == "hls"
    assert _value_after(command, "-hls_time") == "6"
    assert _value_after(command, "-hls_segment_type") == "mpegts"
    assert _value_after(command, "-hls_list_size") == "0"
    assert _value_after(command, "-hls_playlist_type") == "vod"
    assert "delete_segments" not in command
    assert _value_after(command, "-hls_segment_filename") == str(tmp_path / "hls" / "segment_%03d.ts")
    assert command[-1] == str(playlist)


def test_build_hls_command_live_window(tmp_path: Path) -> None:
    command = build_hls_command(
        "ffmpeg",
        tmp_path / "in.mp4",
        tmp_path / "playlist.m3u8",
        playlist_size=5,
        vod=False,
    )

    assert _value_after(command, "-hls_list_size") == "5"
    assert _value_after(command, "-hls_flags") == "delete_segments"
    assert "-hls_playlist_type" not in command


def test_build_dash_command(tmp_path: Path) -> None:
    manifest = tmp_path / "manifest.mpd"

    command = build_dash_command("ffmpeg", tmp_path / "in.mp4", manifest)

    assert _value_after(command, "-f") == "dash"
    assert _value_after(command, "-seg_duration") == "4"
    assert _value_after(command, "-use_timeline") == "1"
    assert _value_after(command, "-use_template") == "1"
    assert _value_after(command, "-init_seg_name") == "init_$RepresentationID$.m4s"
    assert _value_after(command, "-media_seg_name") == "segment_$RepresentationID$_$Number$.m4s"
    assert command[-1] == str(manifest)


def test_dash_command_maps_only_first_video_and_audio(tmp_path: Path) -> None:
    command = build_dash_command("ffmpeg", tmp_path / "in.mkv", tmp_path / "manifest.mpd")

    maps = [command[index + 1] for index, arg in enumerate(command) if arg == "-map"]
    assert maps == ["0:v:0", "0:a?"]
    # Every representation writes its own media segments.
    assert "$RepresentationID$" in _value_after(command, "-media_seg_name")


@pytest.mark.parametrize(
    ("duration", "count", "expected"),
    [
        (60.0, 5, [10.0, 20.0, 30.0, 40.0, 50.0]),
        (9.0, 2, [3.0, 6.0]),
        (30.0, 0, []),
    ],
)
def test_thumbnail_timestamps_are_evenly_spaced(duration: float, count: int, expected: list[float]) -> None:
    assert thumbnail_timestamps(duration, count) == pytest.approx(expected)


def test_build_thumbnail_command_seeks_before_input(tmp_path: Path) -> None:
    command = build_thumbnail_command("ffmpeg", tmp_path / "in.mp4", tmp_path / "thumb_0.jpg", 12.5)

    assert command.index("-ss") < command.index("-i")
    assert _value_after(command, "-ss") == "12.500"
    assert _value_after(command, "-frames:v") == "1"
    assert _value_after(command, "-vf") == "scale=320:180"


def test_build_preview_command(tmp_path: Path) -> None:
    command = build_preview_command("ffmpeg", tmp_path / "in.mp4", tmp_path / "preview.mp4")

    assert _value_after(command, "-t") == "30.000"
    assert _value_after(command, "-vf") == scale_filter("640x360")
    assert _value_after(command, "-crf") == "28"
    assert _value_after(command, "-b:v") == "1000k"
    assert _value_after(command, "-b:a") == "128k"
    assert command[-1].endswith("preview.mp4")
