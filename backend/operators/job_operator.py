from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session as DBSession

from database.models import AssemblyJob as AssemblyJobModel
from models.assembly_models import (
    AssemblyJobKind,
    AssemblyJobResponse,
    AssemblyJobStatus,
)
from utils.errors import JobAlreadyTerminalError, JobNotFoundError, JobUpdateConflict

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 5
UPDATE_RETRY_BASE_SECONDS = 0.1
TERMINAL_STATUSES = [s.value for s in AssemblyJobStatus if s.is_terminal]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_job(
    db: DBSession,
    kind: AssemblyJobKind,
    request: dict[str, Any],
) -> AssemblyJobModel:
    now = _now()
    job = AssemblyJobModel(
        kind=kind.value,
        status=AssemblyJobStatus.PENDING.value,
        progress=0,
        version=1,
        request=request,
        created_at=now,
        updated_at=now,
    )

    db.add(job)
    db.commit()
    db.refresh(job)

    logger.info(f"Created {kind.value} assembly job {job.job_id}")

    return job


def get_job(db: DBSession, job_id: UUID) -> AssemblyJobModel | None:
    return db.query(AssemblyJobModel).filter(AssemblyJobModel.job_id == job_id).first()


def update_job_status(
    db: DBSession,
    job_id: UUID,
    status: AssemblyJobStatus,
    progress: int | None = None,
    stage: str | None = None,
    error_message: str | None = None,
    result_url: str | None = None,
    result: dict[str, Any] | None = None,
) -> AssemblyJobModel:
    """
    Apply a status/progress update.

    A job reaches a terminal state at most once, and reported progress is
    never lowered. The write only lands if the row still carries the version
    that was read and is not terminal; on a conflict the row is re-read and
    the update retried with backoff.
    """
    for attempt in range(1, MAX_UPDATE_ATTEMPTS + 1):
        job = get_job(db, job_id)
        if not job:
            raise JobNotFoundError(job_id)

        if AssemblyJobStatus(job.status).is_terminal:
            raise JobAlreadyTerminalError(job_id, job.status)

        current_version = job.version or 1
        now = _now()
        values: dict[Any, Any] = {
            AssemblyJobModel.status: status.value,
            AssemblyJobModel.version: current_version + 1,
            AssemblyJobModel.updated_at: now,
        }

        if progress is not None:
            clamped = max(0, min(100, int(progress)))
            values[AssemblyJobModel.progress] = max(job.progress or 0, clamped)

        if stage:
            values[AssemblyJobModel.stage] = stage

        if error_message:
            values[AssemblyJobModel.error_message] = error_message

        if result_url:
            values[AssemblyJobModel.result_url] = result_url

        if result is not None:
            values[AssemblyJobModel.result] = result

        if status.is_terminal:
            values[AssemblyJobModel.completed_at] = now
        if status == AssemblyJobStatus.COMPLETED:
            values[AssemblyJobModel.progress] = 100

        updated = (
            db.query(AssemblyJobModel)
            .filter(
                AssemblyJobModel.job_id == job_id,
                AssemblyJobModel.version == current_version,
                AssemblyJobModel.status.notin_(TERMINAL_STATUSES),
            )
            .update(values, synchronize_session=False)
        )

        if updated:
            db.commit()
            db.refresh(job)
            return job

        # Rolling back expires the stale snapshot so the next read is fresh.
        db.rollback()
        logger.warning(
            f"Version conflict updating job {job_id} "
            f"(attempt {attempt}/{MAX_UPDATE_ATTEMPTS})"
        )
        if attempt < MAX_UPDATE_ATTEMPTS:
            time.sleep(min(UPDATE_RETRY_BASE_SECONDS * 2 ** (attempt - 1), 2.0))

    raise JobUpdateConflict(job_id, MAX_UPDATE_ATTEMPTS)


def mark_completed(
    db: DBSession,
    job_id: UUID,
    result_url: str,
    result: dict[str, Any] | None = None,
) -> AssemblyJobModel:
    job = update_job_status(
        db,
        job_id,
        AssemblyJobStatus.COMPLETED,
        result_url=result_url,
        result=result or {},
    )
    logger.info(f"Assembly job {job_id} completed: {result_url}")
    return job


def mark_failed(db: DBSession, job_id: UUID, message: str) -> AssemblyJobModel:
    job = update_job_status(
        db,
        job_id,
        AssemblyJobStatus.FAILED,
        error_message=message or "Assembly job failed",
    )
    logger.warning(f"Assembly job {job_id} failed: {message}")
    return job


def job_to_response(job: AssemblyJobModel) -> AssemblyJobResponse:
    return AssemblyJobResponse(
        job_id=job.job_id,
        kind=AssemblyJobKind(job.kind),
        status=AssemblyJobStatus(job.status),
        progress=job.progress,
        stage=job.stage,
        error=job.error_message,
        result_url=job.result_url,
        result=job.result or {},
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )
