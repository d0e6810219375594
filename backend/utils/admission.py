from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Sequence

import dotenv
import requests

from models.assembly_models import AdmissionResult, MediaSegmentInput
from utils.errors import AdmissionRejected, SegmentValidationError
from utils.ffmpeg_commands import to_chunk_ms


dotenv.load_dotenv()
logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class AdmissionLimits:
    max_audio_size_mb: float = 20
    max_video_segment_size_mb: float = 100
    max_total_segments: int = 50
    max_job_duration_ms: int = 600_000
    segment_probe_sample: int = 3
    probe_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> AdmissionLimits:
        return cls(
            max_audio_size_mb=float(os.getenv("ASSEMBLY_MAX_AUDIO_SIZE_MB", "20")),
            max_video_segment_size_mb=float(
                os.getenv("ASSEMBLY_MAX_VIDEO_SEGMENT_MB", "100")
            ),
            max_total_segments=int(os.getenv("ASSEMBLY_MAX_TOTAL_SEGMENTS", "50")),
            max_job_duration_ms=int(
                os.getenv("ASSEMBLY_MAX_JOB_DURATION_MS", "600000")
            ),
            segment_probe_sample=int(
                os.getenv("ASSEMBLY_SEGMENT_PROBE_SAMPLE", "3")
            ),
            probe_timeout_seconds=float(
                os.getenv("ASSEMBLY_PROBE_TIMEOUT_SECONDS", "10")
            ),
        )


def count_chunks(total_duration_ms: int, chunk_duration_sec: float) -> int:
    return math.ceil(total_duration_ms / to_chunk_ms(chunk_duration_sec))


def format_size_error(kind: str, size_mb: float, max_mb: float) -> str:
    return f"{kind} file too large: {size_mb:.1f}MB (max {max_mb:g}MB)"


def validate_segments(segments: Sequence[MediaSegmentInput]) -> list[str]:
    errors: list[str] = []

    if not segments:
        errors.append("No segments provided")
        return errors

    indices = sorted(s.index for s in segments)
    if len(set(indices)) != len(indices):
        errors.append("Duplicate segment indices found")

    for expected, actual in enumerate(sorted(set(indices))):
        if actual != expected:
            errors.append(f"Missing segment at index {expected}")
            break

    missing_urls = [s for s in segments if not s.url]
    if missing_urls:
        errors.append(f"{len(missing_urls)} segments missing URLs")

    ordered = sorted(segments, key=lambda s: s.index)
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.index == cur.index:
            continue
        if prev.end_time_ms != cur.start_time_ms:
            errors.append(
                f"Segment {cur.index} starts at {cur.start_time_ms}ms "
                f"but segment {prev.index} ends at {prev.end_time_ms}ms"
            )
            break

    return errors


class AdmissionGuard:
    def __init__(
        self,
        limits: AdmissionLimits | None = None,
        session: requests.Session | None = None,
    ):
        self.limits = limits or AdmissionLimits.from_env()
        self._http = session or requests.Session()

    def probe_size_mb(self, url: str) -> float | None:
        """HEAD the url and return its declared size in MB, or None if unknown."""
        try:
            response = self._http.head(
                url,
                allow_redirects=True,
                timeout=self.limits.probe_timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("Size probe failed for %s: %s", url, exc)
            return None

        content_length = response.headers.get("content-length")
        if not content_length:
            logger.warning("No content-length header for %s, proceeding", url)
            return None
        try:
            return int(content_length) / BYTES_PER_MB
        except ValueError:
            logger.warning(
                "Unparsable content-length %r for %s", content_length, url
            )
            return None

    def check_size(self, url: str, max_mb: float, kind: str) -> float | None:
        size_mb = self.probe_size_mb(url)
        if size_mb is None:
            return None
        if size_mb > max_mb:
            raise AdmissionRejected(format_size_error(kind, size_mb, max_mb))
        logger.info("%s size: %.2fMB (within %gMB limit)", kind, size_mb, max_mb)
        return size_mb

    def validate_audio(self, audio_url: str) -> AdmissionResult:
        size_mb = self.check_size(audio_url, self.limits.max_audio_size_mb, "Audio")
        return AdmissionResult(
            size_mb=size_mb,
            size_verified=size_mb is not None,
        )

    def validate_chunk_request(
        self,
        audio_url: str,
        chunk_duration_sec: float,
        total_duration_ms: int,
    ) -> AdmissionResult:
        if to_chunk_ms(chunk_duration_sec) <= 0:
            raise AdmissionRejected(
                f"Chunk duration must be at least 1ms, got {chunk_duration_sec}s"
            )
        if total_duration_ms <= 0:
            raise AdmissionRejected(
                f"Total duration must be positive, got {total_duration_ms}ms"
            )
        if total_duration_ms > self.limits.max_job_duration_ms:
            raise AdmissionRejected(
                f"Audio too long: {total_duration_ms / 1000:.1f}s "
                f"(max {self.limits.max_job_duration_ms / 1000:g}s)"
            )

        total_chunks = count_chunks(total_duration_ms, chunk_duration_sec)
        if total_chunks > self.limits.max_total_segments:
            raise AdmissionRejected(
                f"Too many chunks: {total_chunks} "
                f"(max {self.limits.max_total_segments}). "
                "Use longer chunk duration or shorter audio."
            )

        result = self.validate_audio(audio_url)
        return result.model_copy(update={"total_chunks": total_chunks})

    def validate_stitch_request(
        self,
        segments: Sequence[MediaSegmentInput],
        audio_url: str | None = None,
    ) -> AdmissionResult:
        if len(segments) > self.limits.max_total_segments:
            raise AdmissionRejected(
                f"Too many video segments: {len(segments)} "
                f"(max {self.limits.max_total_segments})"
            )

        errors = validate_segments(segments)
        if errors:
            raise SegmentValidationError(errors)

        total_duration_ms = sum(s.duration_ms for s in segments)
        if total_duration_ms > self.limits.max_job_duration_ms:
            raise AdmissionRejected(
                f"Video too long: {total_duration_ms / 1000:.1f}s "
                f"(max {self.limits.max_job_duration_ms / 1000:g}s)"
            )

        ordered = sorted(segments, key=lambda s: s.index)
        verified = True
        largest: float | None = None
        for segment in ordered[: self.limits.segment_probe_sample]:
            size_mb = self.check_size(
                segment.url,
                self.limits.max_video_segment_size_mb,
                f"Video segment {segment.index}",
            )
            if size_mb is None:
                verified = False
            elif largest is None or size_mb > largest:
                largest = size_mb

        if audio_url:
            audio = self.validate_audio(audio_url)
            verified = verified and audio.size_verified

        return AdmissionResult(
            size_mb=largest,
            size_verified=verified,
            total_chunks=len(segments),
        )
