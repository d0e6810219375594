from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable

import dotenv

from utils import gcs_utils
from utils.errors import UploadFailed


dotenv.load_dotenv()
logger = logging.getLogger(__name__)


AUDIO_CHUNK_CATEGORY = "audio-chunks"
VIDEO_CATEGORY = "music-videos"
MANIFEST_CATEGORY = "video-manifests"
JOB_CATEGORIES = (AUDIO_CHUNK_CATEGORY, VIDEO_CATEGORY, MANIFEST_CATEGORY)


@dataclass
class StorageConfig:
    bucket: str = "video-editor"
    public_base_url: str = ""
    max_attempts: int = 3
    backoff_seconds: float = 1.0

    @classmethod
    def from_env(cls) -> StorageConfig:
        return cls(
            bucket=os.getenv("GCS_BUCKET", "video-editor"),
            public_base_url=os.getenv("STORAGE_PUBLIC_BASE_URL", ""),
            max_attempts=int(os.getenv("ASSEMBLY_UPLOAD_ATTEMPTS", "3")),
            backoff_seconds=float(os.getenv("ASSEMBLY_UPLOAD_BACKOFF_SECONDS", "1")),
        )


def build_key(category: str, name: str, job_id: str | None = None) -> str:
    """Job-scoped keys make cleanup a single prefix deletion."""
    if job_id:
        return f"{category}/{job_id}/{name}"
    return f"{category}/{int(time.time() * 1000)}_{name}"


def job_prefixes(job_id: str) -> list[str]:
    return [f"{category}/{job_id}/" for category in JOB_CATEGORIES]


class StorageUploader:
    def __init__(
        self,
        config: StorageConfig | None = None,
        upload: Callable[..., dict] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or StorageConfig.from_env()
        self._upload = upload or gcs_utils.upload_file
        self._sleep = sleep

    def public_url(self, key: str) -> str:
        return gcs_utils.build_public_url(
            self.config.bucket, key, self.config.public_base_url
        )

    def put(self, key: str, data: bytes, content_type: str) -> str:
        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            upload_info = self._upload(
                bucket_name=self.config.bucket,
                contents=data,
                destination_blob_name=key,
                content_type=content_type,
            )
            if upload_info:
                logger.info(
                    "Uploaded %s (%d bytes, attempt %d)", key, len(data), attempt
                )
                return self.public_url(key)

            if attempt < attempts:
                delay = self.config.backoff_seconds * attempt
                logger.warning(
                    "Upload of %s failed (attempt %d/%d); retrying in %.1fs",
                    key,
                    attempt,
                    attempts,
                    delay,
                )
                self._sleep(delay)

        raise UploadFailed(key, attempts)
