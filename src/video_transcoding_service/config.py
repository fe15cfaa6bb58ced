"""Configuration for the video transcoding service."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables."""

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection string for job state snapshots",
    )
    celery_broker_url: str = Field(
        default="redis://localhost:6379/1",
        description="Celery broker connection string",
    )
    celery_result_backend: str = Field(
        default="redis://localhost:6379/2",
        description="Celery result backend connection string",
    )
    celery_task_queue: str = Field(
        default="video-transcoding",
        description="Celery queue for transcoding tasks",
    )
    celery_visibility_timeout_seconds: int = Field(
        default=3600,
        gt=0,
        description="Broker lease after which an unacknowledged task is redelivered",
    )

    queue_backend: Literal["celery", "memory"] = Field(
        default="celery",
        description="Work queue transport; 'memory' runs an in-process worker pool",
    )
    queue_concurrency: int = Field(default=2, ge=1, description="Jobs processed at once")
    queue_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts per job")
    queue_backoff_delay_seconds: float = Field(
        default=2.0, ge=0.0, description="Base delay for exponential retry backoff"
    )
    queue_lease_seconds: float = Field(
        default=300.0, gt=0.0, description="Lease held by a worker on a delivered job"
    )
    queue_poll_interval_seconds: float = Field(default=1.0, gt=0.0)
    queue_completed_max_age_seconds: float = Field(default=3600.0, ge=0.0)
    queue_completed_max_count: int = Field(default=100, ge=0)
    queue_failed_max_age_seconds: float = Field(default=86400.0, ge=0.0)
    queue_fast_fail_permanent_errors: bool = Field(
        default=False,
        description="Dead-letter permanent errors (e.g. unreadable input) on first failure",
    )

    job_state_ttl_seconds: int = Field(
        default=86400, gt=0, description="Expiry refreshed on every job state write"
    )

    storage_backend: Literal["s3", "memory"] = Field(default="s3")
    s3_bucket: str = Field(default="streaming-videos")
    s3_endpoint_url: Optional[str] = Field(
        default=None, description="S3-compatible endpoint, e.g. http://127.0.0.1:9000"
    )
    s3_public_endpoint_url: Optional[str] = Field(
        default=None, description="Endpoint used when signing URLs handed to clients"
    )
    s3_region: str = Field(default="us-east-1")
    s3_access_key: Optional[str] = Field(default=None)
    s3_secret_key: Optional[str] = Field(default=None)
    s3_presign_expire_seconds: int = Field(default=86400, gt=0)

    temp_dir: Path = Field(
        default=Path("/tmp/video-transcoding"),
        description="Base directory for transient media files",
    )
    local_input_root: Optional[Path] = Field(
        default=None,
        description="Directory whose files may be used in place as job inputs; unset means artifact keys only",
    )
    ffmpeg_binary: str = Field(default="ffmpeg", description="FFmpeg executable path")
    ffprobe_binary: str = Field(default="ffprobe", description="FFprobe executable path")
    ffmpeg_threads: int = Field(default=4, ge=0)
    enable_4k: bool = Field(default=False, description="Allow the 4k profile")

    hls_segment_duration: int = Field(default=10, gt=0)
    hls_playlist_size: int = Field(default=5, ge=0)
    hls_vod_playlist: bool = Field(
        default=True,
        description="Keep every segment in the playlist instead of a sliding live window",
    )
    dash_segment_duration: int = Field(default=4, gt=0)

    thumbnail_count: int = Field(default=5, ge=1)
    thumbnail_size: str = Field(default="320x180")
    preview_duration_seconds: float = Field(default=30.0, gt=0.0)
    preview_size: str = Field(default="640x360")

    log_level: str = Field(default="INFO", description="Application log level")

    model_config = SettingsConfigDict(env_prefix="VIDEO_", env_file=None, extra="ignore")


settings = Settings()
