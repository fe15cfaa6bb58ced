"""Pydantic models for transcoding requests, job state and result manifests."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import settings
from .profiles import get_profile


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model accepting snake_case or camelCase and emitting camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobState(str, Enum):
    """Enumeration of possible job lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStage(str, Enum):
    """Pipeline steps in execution order; persisted on the job record."""

    METADATA = "metadata"
    TRANSCODE = "transcode"
    HLS = "hls"
    DASH = "dash"
    THUMBNAILS = "thumbnails"
    PREVIEW = "preview"
    FINALIZE = "finalize"


class TranscodeRequest(CamelModel):
    """HTTP payload describing one transcoding job."""

    video_id: str = Field(min_length=1)
    input_location: str = Field(min_length=1, description="Local path or artifact store key")
    profiles: list[str] = Field(default_factory=list)
    generate_hls: bool = Field(default=False, alias="generateHLS")
    generate_dash: bool = Field(default=False, alias="generateDASH")
    generate_thumbnails: bool = Field(default=False)
    priority: int = Field(default=5, ge=0, le=10, description="0 is delivered first")

    @field_validator("video_id")
    @classmethod
    def validate_video_id(cls, value: str) -> str:
        if "/" in value or value in {".", ".."}:
            raise ValueError("videoId must not contain path separators")
        return value

    @field_validator("profiles")
    @classmethod
    def validate_profiles(cls, value: list[str]) -> list[str]:
        unique: list[str] = []
        for name in value:
            get_profile(name, enable_4k=settings.enable_4k)
            if name not in unique:
                unique.append(name)
        return unique


class VideoMetadata(CamelModel):
    """Technical summary of a source file."""

    duration: float = Field(ge=0.0, description="Seconds")
    format: str
    width: int
    height: int
    bitrate: int = Field(description="Bits per second")
    fps: float
    codec: str
    audio_codec: Optional[str] = None
    audio_bitrate: Optional[int] = None


class TranscodedFile(CamelModel):
    profile: str
    path: str
    size: int


class HLSOutput(CamelModel):
    playlist: str
    segments: list[str] = Field(default_factory=list)


class DASHOutput(CamelModel):
    manifest: str
    segments: list[str] = Field(default_factory=list)


class TranscodeResult(CamelModel):
    """Manifest of every artifact produced by a successful job."""

    video_id: str
    metadata: Optional[VideoMetadata] = None
    transcoded_files: list[TranscodedFile] = Field(default_factory=list)
    hls: Optional[HLSOutput] = None
    dash: Optional[DASHOutput] = None
    thumbnails: list[str] = Field(default_factory=list)
    preview: Optional[str] = None

    def artifact_keys(self) -> list[str]:
        keys = [item.path for item in self.transcoded_files]
        if self.hls:
            keys.extend([self.hls.playlist, *self.hls.segments])
        if self.dash:
            keys.extend([self.dash.manifest, *self.dash.segments])
        keys.extend(self.thumbnails)
        if self.preview:
            keys.append(self.preview)
        return keys


class JobRecord(BaseModel):
    """Persisted job snapshot shared by the API and workers."""

    job_id: str
    request: TranscodeRequest
    state: JobState = JobState.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    stage: Optional[PipelineStage] = None
    result: Optional[TranscodeResult] = None
    error: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JobCreatedResponse(CamelModel):
    """Response payload when a job is scheduled."""

    job_id: str


class JobStatusResponse(CamelModel):
    """Response payload describing the current status of a job."""

    job_id: str
    video_id: str
    state: JobState
    progress: int
    attempts: int
    max_attempts: int
    stage: Optional[PipelineStage] = None
    result: Optional[TranscodeResult] = None
    error: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: JobRecord) -> "JobStatusResponse":
        return cls(
            job_id=record.job_id,
            video_id=record.request.video_id,
            state=record.state,
            progress=record.progress,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            stage=record.stage,
            result=record.result,
            error=record.error,
            message=record.message,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class QueueMetrics(CamelModel):
    queued: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: dict[JobState, int]) -> "QueueMetrics":
        values: dict[str, Any] = {state.value: counts.get(state, 0) for state in JobState}
        return cls(**values, total=sum(values.values()))


class PresignedUrlResponse(CamelModel):
    key: str
    url: str
    expires_in: int
