from __future__ import annotations

import logging
from typing import Callable, Sequence

import requests

from models.assembly_models import FallbackResult, MediaSegmentInput, ProgressStage
from utils import gcs_utils
from utils.errors import AdmissionRejected, FallbackDownloadError
from utils.sandbox import SandboxSessionManager

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 120
FALLBACK_MESSAGE = "Full video merge unavailable - downloading preview only"

ProgressCallback = Callable[[ProgressStage, int, str], None]


def can_use_full_pipeline(sessions: SandboxSessionManager | None = None) -> bool:
    sessions = sessions or SandboxSessionManager()
    try:
        return sessions.is_available()
    except Exception:
        logger.exception("Capability probe failed; assuming no full pipeline")
        return False


def _download(url: str, http: requests.Session) -> bytes:
    gcs_location = gcs_utils.parse_gcs_url(url)
    if gcs_location:
        data = gcs_utils.download_file(*gcs_location)
        if data is None:
            raise FallbackDownloadError(f"Failed to download segment: {url}")
        return data

    try:
        response = http.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FallbackDownloadError(f"Failed to download segment {url}: {exc}") from exc
    return response.content


def assemble_fallback(
    segments: Sequence[MediaSegmentInput],
    audio_url: str | None = None,
    on_progress: ProgressCallback | None = None,
    http: requests.Session | None = None,
) -> FallbackResult:
    """
    Degraded path used when no codec sandbox can run.

    Every segment is downloaded in index order, but no concatenation happens:
    the returned bytes are the first segment only and must be presented as a
    preview. The audio track is not mixed in.
    """
    if not segments:
        raise AdmissionRejected("No segments provided")

    http = http or requests.Session()
    ordered = sorted(segments, key=lambda s: s.index)
    if audio_url:
        logger.info("Fallback preview ignores audio track %s", audio_url)

    blobs: list[bytes] = []
    for position, segment in enumerate(ordered):
        blobs.append(_download(segment.url, http))
        if on_progress:
            on_progress(
                ProgressStage.DOWNLOADING,
                round((position + 1) / len(ordered) * 80),
                f"Downloaded segment {position + 1}/{len(ordered)}",
            )

    logger.warning(
        "Full video merge unavailable; returning segment %d of %d as preview",
        ordered[0].index,
        len(ordered),
    )
    if on_progress:
        on_progress(ProgressStage.FINALIZING, 90, FALLBACK_MESSAGE)

    return FallbackResult(
        content=blobs[0],
        segment_count=len(ordered),
        downloaded_count=len(blobs),
        message=FALLBACK_MESSAGE,
    )
