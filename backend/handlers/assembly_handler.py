import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from rq import Queue
from sqlalchemy.orm import Session

from database.base import get_db
from dependencies.assembly import get_orchestrator, get_queue
from dependencies.auth import require_api_token
from models.assembly_models import (
    AssemblyJobCreateResponse,
    AssemblyJobKind,
    AssemblyJobStatus,
    AssemblyJobStatusResponse,
    AudioDurationRequest,
    AudioDurationResponse,
    CapabilitiesResponse,
    ChunkAudioRequest,
    CleanupResponse,
    StitchVideosRequest,
)
from operators.assembly_operator import AssemblyOrchestrator, run_assembly_job
from operators.cleanup_operator import cleanup_failed_job
from operators.job_operator import create_job, get_job, job_to_response
from utils.errors import (
    AdmissionRejected,
    AssemblyError,
    CodecExecutionFailed,
    SandboxUnavailable,
    SegmentValidationError,
    UploadFailed,
)


router = APIRouter(
    prefix="/assembly",
    tags=["assembly"],
    dependencies=[Depends(require_api_token)],
)
logger = logging.getLogger(__name__)

ASSEMBLY_JOB_TIMEOUT_SECONDS = 900


def _to_http_error(exc: AssemblyError) -> HTTPException:
    if isinstance(exc, SegmentValidationError):
        return HTTPException(status_code=400, detail={"message": str(exc), "errors": exc.errors})
    if isinstance(exc, AdmissionRejected):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, SandboxUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (CodecExecutionFailed, UploadFailed)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.get("/capabilities", response_model=CapabilitiesResponse)
def get_capabilities(
    orchestrator: AssemblyOrchestrator = Depends(get_orchestrator),
):
    return CapabilitiesResponse(
        ok=True,
        full_pipeline=orchestrator.can_use_full_pipeline(),
        backend=orchestrator.sessions.backend,
    )


@router.post("/chunk", response_model=AssemblyJobCreateResponse)
def create_chunk_job(
    request: ChunkAudioRequest,
    db: Session = Depends(get_db),
    orchestrator: AssemblyOrchestrator = Depends(get_orchestrator),
    queue: Queue = Depends(get_queue),
):
    try:
        orchestrator.guard.validate_chunk_request(
            request.audio_url, request.chunk_duration_sec, request.total_duration_ms
        )
    except AssemblyError as e:
        raise _to_http_error(e)

    job = create_job(db, AssemblyJobKind.CHUNK, request.model_dump(mode="json"))
    queue.enqueue(
        run_assembly_job,
        str(job.job_id),
        job_timeout=ASSEMBLY_JOB_TIMEOUT_SECONDS,
    )
    logger.info(f"Enqueued chunk job {job.job_id}")

    return AssemblyJobCreateResponse(ok=True, job=job_to_response(job))


@router.post("/stitch", response_model=AssemblyJobCreateResponse)
def create_stitch_job(
    request: StitchVideosRequest,
    db: Session = Depends(get_db),
    orchestrator: AssemblyOrchestrator = Depends(get_orchestrator),
    queue: Queue = Depends(get_queue),
):
    try:
        orchestrator.guard.validate_stitch_request(request.segments, request.audio_url)
    except AssemblyError as e:
        raise _to_http_error(e)

    job = create_job(
        db, AssemblyJobKind.STITCH, request.model_dump(mode="json")
    )
    queue.enqueue(
        run_assembly_job,
        str(job.job_id),
        job_timeout=ASSEMBLY_JOB_TIMEOUT_SECONDS,
    )
    logger.info(f"Enqueued stitch job {job.job_id} ({len(request.segments)} segments)")

    return AssemblyJobCreateResponse(ok=True, job=job_to_response(job))


@router.get("/jobs/{job_id}", response_model=AssemblyJobStatusResponse)
def get_assembly_job(
    job_id: UUID,
    db: Session = Depends(get_db),
):
    job = get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Assembly job not found")

    return AssemblyJobStatusResponse(ok=True, job=job_to_response(job))


@router.post("/duration", response_model=AudioDurationResponse)
def get_audio_duration(
    request: AudioDurationRequest,
    orchestrator: AssemblyOrchestrator = Depends(get_orchestrator),
):
    try:
        duration_ms = orchestrator.get_audio_duration(request.audio_url)
    except AssemblyError as e:
        logger.warning(f"Duration probe failed for {request.audio_url}: {e}")
        raise _to_http_error(e)

    return AudioDurationResponse(ok=True, duration_ms=duration_ms)


@router.delete("/jobs/{job_id}/artifacts", response_model=CleanupResponse)
def delete_job_artifacts(
    job_id: UUID,
    db: Session = Depends(get_db),
):
    job = get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Assembly job not found")
    if job.status == AssemblyJobStatus.PROCESSING.value:
        raise HTTPException(
            status_code=409, detail="Cannot delete artifacts while the job is processing"
        )

    deleted = cleanup_failed_job(str(job_id))
    return CleanupResponse(ok=True, deleted=deleted)
