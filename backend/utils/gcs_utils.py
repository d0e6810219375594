from __future__ import annotations

import io
import json
import os
import logging
from datetime import datetime
from typing import Optional

import dotenv
from google.cloud import storage
from google.cloud.exceptions import NotFound
from google.oauth2 import service_account


dotenv.load_dotenv()
logger = logging.getLogger(__name__)


def _get_storage_client() -> storage.Client:
    credentials_raw: str = os.getenv("GCP_CREDENTIALS", "")
    if not credentials_raw:
        return storage.Client()
    credentials_info = json.loads(credentials_raw)
    credentials = service_account.Credentials.from_service_account_info(
        credentials_info
    )
    return storage.Client(
        credentials=credentials, project=credentials_info.get("project_id")
    )


def _get_bucket(bucket_name: str) -> storage.Bucket:
    storage_client = _get_storage_client()
    return storage_client.bucket(bucket_name)


def upload_file(
    bucket_name: str,
    contents: bytes,
    destination_blob_name: str,
    content_type: str = "application/octet-stream",
) -> dict:
    try:
        bucket = _get_bucket(bucket_name)
        blob = bucket.blob(destination_blob_name)
        blob.upload_from_file(io.BytesIO(contents), content_type=content_type)
        blob.reload()

        return {
            "path": blob.name,
            "content_type": blob.content_type,
            "size": blob.size,
        }
    except Exception:
        logger.exception(
            "Error uploading file to bucket %s at %s",
            bucket_name,
            destination_blob_name,
        )
        return {}


def download_file(bucket_name: str, blob_name: str) -> Optional[bytes]:
    try:
        bucket = _get_bucket(bucket_name)
        blob = bucket.blob(blob_name)
        return blob.download_as_bytes()
    except Exception:
        logger.exception(
            "Error downloading file from bucket %s at %s",
            bucket_name,
            blob_name,
        )
        return None


def delete_file(bucket_name: str, blob_name: str) -> bool:
    try:
        bucket = _get_bucket(bucket_name)
        blob = bucket.blob(blob_name)
        blob.delete()
        return True
    except NotFound:
        logger.warning("File %s not found in bucket %s", blob_name, bucket_name)
        return False
    except Exception:
        logger.exception(
            "Error deleting file from bucket %s at %s",
            bucket_name,
            blob_name,
        )
        return False


def list_files(bucket_name: str, prefix: str) -> list[tuple[str, datetime | None]]:
    """Return (blob name, creation time) for every object under prefix."""
    storage_client = _get_storage_client()
    return [
        (blob.name, blob.time_created)
        for blob in storage_client.list_blobs(bucket_name, prefix=prefix)
    ]


def build_public_url(bucket_name: str, blob_name: str, base_url: str = "") -> str:
    if base_url:
        return f"{base_url.rstrip('/')}/{blob_name}"
    return f"https://storage.googleapis.com/{bucket_name}/{blob_name}"


def parse_gcs_url(url: str) -> tuple[str, str] | None:
    if not url:
        return None
    if url.startswith("gs://"):
        parts = url[5:].split("/", 1)
        if len(parts) != 2:
            return None
        return parts[0], parts[1]
    return None
