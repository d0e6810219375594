from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from utils import gcs_utils
from utils.storage_uploader import AUDIO_CHUNK_CATEGORY, StorageConfig, job_prefixes

logger = logging.getLogger(__name__)


def cleanup_failed_job(
    job_id: str,
    config: StorageConfig | None = None,
    list_files: Callable = gcs_utils.list_files,
    delete_file: Callable = gcs_utils.delete_file,
) -> list[str]:
    """Delete every artifact under the job's prefixes. Never raises."""
    config = config or StorageConfig.from_env()
    deleted: list[str] = []
    for prefix in job_prefixes(job_id):
        try:
            names = [name for name, _ in list_files(config.bucket, prefix)]
        except Exception:
            logger.exception("Failed to list %s for cleanup", prefix)
            continue
        for name in names:
            if delete_file(config.bucket, name):
                deleted.append(name)

    logger.info("Cleaned up %d artifacts for job %s", len(deleted), job_id)
    return deleted


def cleanup_orphaned_chunks(
    older_than_days: int = 7,
    config: StorageConfig | None = None,
    list_files: Callable = gcs_utils.list_files,
    delete_file: Callable = gcs_utils.delete_file,
    now: datetime | None = None,
) -> dict:
    config = config or StorageConfig.from_env()
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)

    deleted = 0
    errors = 0
    for name, created in list_files(config.bucket, f"{AUDIO_CHUNK_CATEGORY}/"):
        if created is None or created >= cutoff:
            continue
        if delete_file(config.bucket, name):
            deleted += 1
        else:
            errors += 1

    logger.info(
        "Orphaned chunk cleanup: deleted=%d errors=%d cutoff=%s",
        deleted,
        errors,
        cutoff.isoformat(),
    )
    return {"deleted": deleted, "errors": errors}
