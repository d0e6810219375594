"""
Pydantic models for media segment assembly.

This module defines schemas for:
- Segment inputs and admission results
- Chunk/stitch results and the degraded fallback preview
- Assembly job requests, status and manifests
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS
# =============================================================================


class AssemblyJobKind(str, Enum):
    """Kind of assembly job."""

    CHUNK = "chunk"  # Split one audio track into chunks
    STITCH = "stitch"  # Concatenate video segments (+ optional audio)


class AssemblyJobStatus(str, Enum):
    """Status of an assembly job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssemblyJobStatus.COMPLETED, AssemblyJobStatus.FAILED)


class AssemblyMode(str, Enum):
    """How a deliverable was produced."""

    FULL = "full"  # Real concatenation + mux inside the sandbox
    FALLBACK_PREVIEW = "fallback_preview"  # First segment only, no reassembly


class ProgressStage(str, Enum):
    DOWNLOADING = "downloading"
    CHUNKING = "chunking"
    MERGING = "merging"
    UPLOADING = "uploading"
    FINALIZING = "finalizing"


# =============================================================================
# INPUTS
# =============================================================================


class MediaSegmentInput(BaseModel):
    """One independently generated segment, ordered by index."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    index: int = Field(ge=0, description="Ordering key")
    url: str = Field(description="Fetchable location")
    duration_ms: int = Field(ge=0)
    start_time_ms: int = Field(ge=0)
    end_time_ms: int = Field(ge=0)


class AdmissionResult(BaseModel):
    """Outcome of a successful admission check."""

    model_config = ConfigDict(frozen=True)

    size_mb: float | None = Field(
        default=None, description="Largest declared size probed (None = unknown)"
    )
    size_verified: bool = Field(
        default=False, description="False when any probed size was unknown"
    )
    total_chunks: int | None = None


# =============================================================================
# RESULTS
# =============================================================================


class AudioChunkResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    url: str
    duration_ms: int
    start_time_ms: int
    end_time_ms: int


class VideoStitchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    duration_ms: int
    file_size: int
    segment_count: int
    has_audio: bool = False
    mode: AssemblyMode = AssemblyMode.FULL
    is_preview: bool = False


class FallbackResult(BaseModel):
    """Best-effort artifact: the first segment only, never a real stitch."""

    model_config = ConfigDict(frozen=True)

    content: bytes = Field(repr=False)
    content_type: str = "video/mp4"
    segment_count: int
    downloaded_count: int
    mode: AssemblyMode = AssemblyMode.FALLBACK_PREVIEW
    is_preview: bool = True
    message: str = "Full video merge unavailable - preview only"

    @property
    def size(self) -> int:
        return len(self.content)


class ChunkPlanEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    start_time_ms: int
    end_time_ms: int
    duration_ms: int


# =============================================================================
# MANIFEST
# =============================================================================


class ManifestSegment(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    index: int
    url: str
    duration_ms: int
    start_time_ms: int
    end_time_ms: int


class AssemblyManifest(BaseModel):
    """
    Manifest document persisted for a finished video job.

    Serialized with camelCase keys so playback clients can read it directly.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    version: int = 1
    job_id: str
    total_duration_ms: int
    segment_count: int
    audio_url: str | None = None
    audio_sync_mode: str = "embedded"
    segments: list[ManifestSegment]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# =============================================================================
# REQUEST MODELS
# =============================================================================


class ChunkAudioRequest(BaseModel):
    audio_url: str
    chunk_duration_sec: float = Field(gt=0, description="Seconds per chunk")
    total_duration_ms: int = Field(gt=0)


class StitchVideosRequest(BaseModel):
    segments: list[MediaSegmentInput] = Field(min_length=1)
    audio_url: str | None = None
    output_key: str | None = Field(
        default=None, description="Storage key for the result (auto if omitted)"
    )


class AudioDurationRequest(BaseModel):
    audio_url: str


# =============================================================================
# RESPONSE MODELS
# =============================================================================


class AssemblyJobResponse(BaseModel):
    job_id: UUID
    kind: AssemblyJobKind
    status: AssemblyJobStatus
    progress: int = Field(ge=0, le=100)
    stage: str | None = None
    error: str | None = None
    result_url: str | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class AssemblyJobCreateResponse(BaseModel):
    ok: bool = True
    job: AssemblyJobResponse


class AssemblyJobStatusResponse(BaseModel):
    ok: bool = True
    job: AssemblyJobResponse


class AudioDurationResponse(BaseModel):
    ok: bool = True
    duration_ms: int


class CapabilitiesResponse(BaseModel):
    ok: bool = True
    full_pipeline: bool
    backend: str


class CleanupResponse(BaseModel):
    ok: bool = True
    deleted: list[str]


class PollResult(BaseModel):
    """Terminal outcome observed by the progress poller."""

    job_id: str
    status: AssemblyJobStatus
    result_url: str
    progress: int = 100
    attempts: int
