from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Sequence, TypeVar
from uuid import UUID

import requests
from sqlalchemy.orm import Session as DBSession

from models.assembly_models import (
    AssemblyJobKind,
    AssemblyJobStatus,
    AssemblyManifest,
    AudioChunkResult,
    ChunkAudioRequest,
    FallbackResult,
    ManifestSegment,
    MediaSegmentInput,
    ProgressStage,
    StitchVideosRequest,
    VideoStitchResult,
)
from operators import fallback_operator
from operators.cleanup_operator import cleanup_failed_job
from operators.job_operator import get_job, mark_completed, mark_failed, update_job_status
from utils.admission import AdmissionGuard
from utils.errors import (
    AdmissionRejected,
    CodecExecutionFailed,
    DurationProbeError,
    JobNotFoundError,
    SandboxUnavailable,
)
from utils.ffmpeg_commands import (
    AUDIO_INPUT_FILE,
    CONCAT_LIST_FILE,
    FINAL_FILE,
    MUX_AUDIO_FILE,
    VIDEO_ONLY_FILE,
    build_chunk_args,
    build_concat_args,
    build_concat_list,
    build_mux_args,
    build_probe_args,
    calculate_expected_duration,
    chunk_filename,
    create_chunking_plan,
    parse_duration_ms,
    segment_filename,
    to_chunk_ms,
)
from utils.sandbox import SandboxSession, SandboxSessionManager
from utils.storage_uploader import (
    AUDIO_CHUNK_CATEGORY,
    MANIFEST_CATEGORY,
    VIDEO_CATEGORY,
    StorageUploader,
    build_key,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProgressCallback = Callable[[ProgressStage, int, str], None]

MIN_AUDIO_DURATION_MS = 5_000
MAX_AUDIO_DURATION_MS = 600_000
PREVIEW_FILE = "preview.mp4"
MANIFEST_FILE = "manifest.json"
CODEC_RETRY_BACKOFF_SECONDS = float(os.getenv("ASSEMBLY_RETRY_BACKOFF_SECONDS", "2"))


def _report(on_progress: ProgressCallback | None, stage: ProgressStage, percent: int, message: str) -> None:
    if on_progress:
        on_progress(stage, percent, message)


def _purge(session: SandboxSession) -> None:
    failed = session.purge()
    if failed:
        logger.warning("Sandbox purge left %d files behind: %s", len(failed), failed)


def build_assembly_manifest(
    job_id: str,
    segments: Sequence[MediaSegmentInput],
    audio_url: str | None = None,
    total_duration_ms: int | None = None,
) -> AssemblyManifest:
    ordered = sorted(segments, key=lambda s: s.index)
    if total_duration_ms is None:
        total_duration_ms = calculate_expected_duration(ordered)
    return AssemblyManifest(
        job_id=job_id,
        total_duration_ms=total_duration_ms,
        segment_count=len(ordered),
        audio_url=audio_url,
        segments=[
            ManifestSegment(
                index=s.index,
                url=s.url,
                duration_ms=s.duration_ms,
                start_time_ms=s.start_time_ms,
                end_time_ms=s.end_time_ms,
            )
            for s in ordered
        ],
    )


class AssemblyOrchestrator:
    """Runs chunk/stitch/probe work inside a fresh sandbox session per call."""

    def __init__(
        self,
        guard: AdmissionGuard | None = None,
        sessions: SandboxSessionManager | None = None,
        uploader: StorageUploader | None = None,
        http: requests.Session | None = None,
    ):
        self.guard = guard or AdmissionGuard()
        self.sessions = sessions or SandboxSessionManager()
        self.uploader = uploader or StorageUploader()
        self._http = http

    def can_use_full_pipeline(self) -> bool:
        return fallback_operator.can_use_full_pipeline(self.sessions)

    def assemble_fallback(
        self,
        segments: Sequence[MediaSegmentInput],
        audio_url: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> FallbackResult:
        return fallback_operator.assemble_fallback(
            segments, audio_url=audio_url, on_progress=on_progress, http=self._http
        )

    def chunk_audio(
        self,
        audio_url: str,
        chunk_duration_sec: float,
        total_duration_ms: int,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[AudioChunkResult]:
        admission = self.guard.validate_chunk_request(
            audio_url, chunk_duration_sec, total_duration_ms
        )
        if not admission.size_verified:
            logger.warning("Audio size unverified for %s; proceeding", audio_url)

        plan = create_chunking_plan(total_duration_ms, to_chunk_ms(chunk_duration_sec))
        logger.info(
            "Chunking %s into %d chunks of %gs", audio_url, len(plan), chunk_duration_sec
        )

        def _run(session: SandboxSession) -> list[bytes]:
            outputs: list[bytes] = []
            try:
                _report(on_progress, ProgressStage.DOWNLOADING, 5, "Loading audio")
                session.fetch_file(AUDIO_INPUT_FILE, audio_url)
                for entry in plan:
                    session.exec(
                        build_chunk_args(entry.index, entry.start_time_ms, entry.duration_ms)
                    )
                    name = chunk_filename(entry.index)
                    session.register_output(name)
                    outputs.append(session.read_file(name))
                    _report(
                        on_progress,
                        ProgressStage.CHUNKING,
                        10 + round((entry.index + 1) / len(plan) * 60),
                        f"Created chunk {entry.index + 1}/{len(plan)}",
                    )
            finally:
                _purge(session)
            return outputs

        chunk_bytes = self.sessions.with_session(_run)

        results: list[AudioChunkResult] = []
        for entry, data in zip(plan, chunk_bytes):
            key = build_key(AUDIO_CHUNK_CATEGORY, chunk_filename(entry.index), job_id)
            url = self.uploader.put(key, data, "audio/mpeg")
            results.append(
                AudioChunkResult(
                    index=entry.index,
                    url=url,
                    duration_ms=entry.duration_ms,
                    start_time_ms=entry.start_time_ms,
                    end_time_ms=entry.end_time_ms,
                )
            )
            _report(
                on_progress,
                ProgressStage.UPLOADING,
                70 + round(len(results) / len(plan) * 30),
                f"Uploaded chunk {len(results)}/{len(plan)}",
            )

        return results

    def stitch_videos(
        self,
        segments: Sequence[MediaSegmentInput],
        audio_url: str | None = None,
        output_key: str | None = None,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> VideoStitchResult:
        admission = self.guard.validate_stitch_request(segments, audio_url)
        if not admission.size_verified:
            logger.warning("Segment/audio sizes unverified; proceeding")

        ordered = sorted(segments, key=lambda s: s.index)
        video_duration_ms = calculate_expected_duration(ordered)

        def _run(session: SandboxSession) -> tuple[bytes, int]:
            try:
                for position, segment in enumerate(ordered):
                    session.fetch_file(segment_filename(segment.index), segment.url)
                    _report(
                        on_progress,
                        ProgressStage.DOWNLOADING,
                        round((position + 1) / len(ordered) * 40),
                        f"Loaded segment {position + 1}/{len(ordered)}",
                    )

                session.write_file(CONCAT_LIST_FILE, build_concat_list(ordered).encode("utf-8"))
                _report(on_progress, ProgressStage.MERGING, 50, "Concatenating segments")
                session.exec(build_concat_args())
                session.register_output(VIDEO_ONLY_FILE)

                if not audio_url:
                    _report(on_progress, ProgressStage.FINALIZING, 80, "Reading output")
                    return session.read_file(VIDEO_ONLY_FILE), video_duration_ms

                _report(on_progress, ProgressStage.MERGING, 60, "Loading audio")
                session.fetch_file(MUX_AUDIO_FILE, audio_url)
                audio_ms = parse_duration_ms(
                    session.probe(build_probe_args(MUX_AUDIO_FILE)).logs
                )
                _report(on_progress, ProgressStage.MERGING, 70, "Adding audio track")
                session.exec(build_mux_args())
                session.register_output(FINAL_FILE)

                duration_ms = video_duration_ms
                if audio_ms:
                    duration_ms = min(video_duration_ms, audio_ms)
                else:
                    logger.warning(
                        "Could not read audio duration for %s; reporting video duration",
                        audio_url,
                    )
                _report(on_progress, ProgressStage.FINALIZING, 80, "Reading output")
                return session.read_file(FINAL_FILE), duration_ms
            finally:
                _purge(session)

        data, duration_ms = self.sessions.with_session(_run)

        key = output_key or build_key(VIDEO_CATEGORY, FINAL_FILE, job_id)
        _report(on_progress, ProgressStage.FINALIZING, 90, "Uploading video")
        url = self.uploader.put(key, data, "video/mp4")
        logger.info(
            "Stitched %d segments (%dms, %d bytes) -> %s",
            len(ordered),
            duration_ms,
            len(data),
            key,
        )

        return VideoStitchResult(
            url=url,
            duration_ms=duration_ms,
            file_size=len(data),
            segment_count=len(ordered),
            has_audio=bool(audio_url),
        )

    def get_audio_duration(self, audio_url: str) -> int:
        self.guard.validate_audio(audio_url)

        def _run(session: SandboxSession) -> list[str]:
            try:
                session.fetch_file(AUDIO_INPUT_FILE, audio_url)
                return session.probe(build_probe_args(AUDIO_INPUT_FILE)).logs
            finally:
                _purge(session)

        logs = self.sessions.with_session(_run)
        duration_ms = parse_duration_ms(logs)
        if not duration_ms:
            raise DurationProbeError(
                f"Could not determine audio duration for {audio_url}", logs=logs
            )
        if not MIN_AUDIO_DURATION_MS <= duration_ms <= MAX_AUDIO_DURATION_MS:
            raise AdmissionRejected(
                f"Implausible audio duration: {duration_ms / 1000:.1f}s "
                f"(expected {MIN_AUDIO_DURATION_MS / 1000:g}-{MAX_AUDIO_DURATION_MS / 1000:g}s)"
            )
        return duration_ms


# =============================================================================
# JOB RUNNER
# =============================================================================


def _with_codec_retry(fn: Callable[[], T], sleep: Callable[[float], None]) -> T:
    try:
        return fn()
    except CodecExecutionFailed as exc:
        logger.warning(
            "Codec execution failed (%s); retrying once in %gs",
            exc,
            CODEC_RETRY_BACKOFF_SECONDS,
        )
        sleep(CODEC_RETRY_BACKOFF_SECONDS)
        return fn()


def _run_chunk_job(
    orchestrator: AssemblyOrchestrator,
    job_id: str,
    request: ChunkAudioRequest,
    on_progress: ProgressCallback,
) -> tuple[str, dict[str, Any]]:
    chunks = orchestrator.chunk_audio(
        request.audio_url,
        request.chunk_duration_sec,
        request.total_duration_ms,
        job_id=job_id,
        on_progress=on_progress,
    )
    return chunks[0].url, {
        "chunks": [chunk.model_dump() for chunk in chunks],
        "total_chunks": len(chunks),
    }


def _run_stitch_job(
    orchestrator: AssemblyOrchestrator,
    job_id: str,
    request: StitchVideosRequest,
    on_progress: ProgressCallback,
) -> tuple[str, dict[str, Any]]:
    stitched: VideoStitchResult | None = None
    if orchestrator.can_use_full_pipeline():
        try:
            stitched = orchestrator.stitch_videos(
                request.segments,
                audio_url=request.audio_url,
                output_key=request.output_key,
                job_id=job_id,
                on_progress=on_progress,
            )
        except SandboxUnavailable as exc:
            logger.warning("Sandbox unavailable for job %s (%s); using fallback", job_id, exc)
    else:
        logger.warning("Full pipeline unavailable for job %s; using fallback", job_id)
        orchestrator.guard.validate_stitch_request(request.segments, request.audio_url)

    if stitched is not None:
        result_url = stitched.url
        result = stitched.model_dump(mode="json")
        total_duration_ms = stitched.duration_ms
    else:
        fallback = orchestrator.assemble_fallback(
            request.segments, audio_url=request.audio_url, on_progress=on_progress
        )
        result_url = orchestrator.uploader.put(
            build_key(VIDEO_CATEGORY, PREVIEW_FILE, job_id),
            fallback.content,
            fallback.content_type,
        )
        result = {
            "url": result_url,
            "file_size": fallback.size,
            "segment_count": fallback.segment_count,
            "mode": fallback.mode.value,
            "is_preview": fallback.is_preview,
            "message": fallback.message,
        }
        total_duration_ms = None

    manifest = build_assembly_manifest(
        job_id, request.segments, request.audio_url, total_duration_ms
    )
    result["manifest_url"] = orchestrator.uploader.put(
        build_key(MANIFEST_CATEGORY, MANIFEST_FILE, job_id),
        manifest.to_json().encode("utf-8"),
        "application/json",
    )
    return result_url, result


def run_assembly_job(
    job_id: str | UUID,
    db: DBSession | None = None,
    orchestrator: AssemblyOrchestrator | None = None,
    sleep: Callable[[float], None] = time.sleep,
    cleanup: Callable[[str], list[str]] = cleanup_failed_job,
) -> None:
    """rq task: execute one persisted chunk/stitch job to a terminal state."""
    job_uuid = job_id if isinstance(job_id, UUID) else UUID(str(job_id))
    owns_db = db is None
    if db is None:
        from database.base import SessionLocal

        db = SessionLocal()

    try:
        job = get_job(db, job_uuid)
        if not job:
            raise JobNotFoundError(job_uuid)

        orchestrator = orchestrator or AssemblyOrchestrator()
        kind = AssemblyJobKind(job.kind)
        payload = dict(job.request or {})
        key = str(job_uuid)

        update_job_status(db, job_uuid, AssemblyJobStatus.PROCESSING, progress=0)

        def on_progress(stage: ProgressStage, percent: int, message: str) -> None:
            logger.info("job=%s stage=%s progress=%d %s", key, stage.value, percent, message)
            update_job_status(
                db, job_uuid, AssemblyJobStatus.PROCESSING, progress=percent, stage=stage.value
            )

        try:
            if kind == AssemblyJobKind.CHUNK:
                request = ChunkAudioRequest.model_validate(payload)
                result_url, result = _with_codec_retry(
                    lambda: _run_chunk_job(orchestrator, key, request, on_progress), sleep
                )
            else:
                request = StitchVideosRequest.model_validate(payload)
                result_url, result = _with_codec_retry(
                    lambda: _run_stitch_job(orchestrator, key, request, on_progress), sleep
                )
        except Exception as exc:
            logger.exception("Assembly job %s failed", key)
            mark_failed(db, job_uuid, str(exc))
            cleanup(key)
            raise

        mark_completed(db, job_uuid, result_url, result)
    finally:
        if owns_db:
            db.close()
