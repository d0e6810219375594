from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

import dotenv
import requests

from models.assembly_models import AssemblyJobKind, AssemblyJobStatus, PollResult
from utils.errors import JobReportedFailure, PollTimeout


dotenv.load_dotenv()
logger = logging.getLogger(__name__)

SIMULATED_PROGRESS_CEILING = 90
DEFAULT_FAILURE_MESSAGE = "Assembly job failed"

JobFetcher = Callable[[str], dict[str, Any]]


@dataclass
class PollerConfig:
    api_base_url: str = "http://localhost:8000"
    api_token: str = ""
    interval_seconds: float = 2.0
    max_attempts: int = 60
    request_timeout_seconds: float = 10.0
    expected_chunk_seconds: float = 30.0
    expected_stitch_seconds: float = 120.0

    @classmethod
    def from_env(cls) -> PollerConfig:
        return cls(
            api_base_url=os.getenv("ASSEMBLY_API_URL", "http://localhost:8000"),
            api_token=os.getenv("ASSEMBLY_API_TOKEN", ""),
            interval_seconds=float(os.getenv("ASSEMBLY_POLL_INTERVAL_SECONDS", "2")),
            max_attempts=int(os.getenv("ASSEMBLY_POLL_MAX_ATTEMPTS", "60")),
            expected_chunk_seconds=float(
                os.getenv("ASSEMBLY_EXPECTED_CHUNK_SECONDS", "30")
            ),
            expected_stitch_seconds=float(
                os.getenv("ASSEMBLY_EXPECTED_STITCH_SECONDS", "120")
            ),
        )

    def expected_seconds(self, kind: AssemblyJobKind) -> float:
        if kind == AssemblyJobKind.CHUNK:
            return self.expected_chunk_seconds
        return self.expected_stitch_seconds


def simulated_progress(elapsed_seconds: float, expected_seconds: float) -> int:
    """Time-based estimate that never claims more than 90% on its own."""
    if expected_seconds <= 0:
        return SIMULATED_PROGRESS_CEILING
    estimate = math.floor(elapsed_seconds / expected_seconds * SIMULATED_PROGRESS_CEILING)
    return max(0, min(SIMULATED_PROGRESS_CEILING, estimate))


class ProgressPoller:
    """
    Polls the job-status record until the job is terminal.

    Polls are strictly sequential: the next request is only issued after the
    previous one returned and the interval elapsed. Displayed progress is the
    max of the simulated estimate and the server-reported value, and never
    goes down.
    """

    def __init__(
        self,
        config: PollerConfig | None = None,
        fetch: JobFetcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        session: requests.Session | None = None,
    ):
        self.config = config or PollerConfig.from_env()
        self._http = session or requests.Session()
        self._fetch = fetch or self._fetch_job
        self._sleep = sleep
        self._clock = clock

    def _fetch_job(self, job_id: str) -> dict[str, Any]:
        headers = {}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        response = self._http.get(
            f"{self.config.api_base_url.rstrip('/')}/assembly/jobs/{job_id}",
            headers=headers,
            timeout=self.config.request_timeout_seconds,
        )
        response.raise_for_status()
        return response.json().get("job") or {}

    def poll(
        self,
        job_id: str,
        kind: AssemblyJobKind = AssemblyJobKind.STITCH,
        on_progress: Callable[[int], None] | None = None,
    ) -> PollResult:
        expected = self.config.expected_seconds(kind)
        started = self._clock()
        displayed = 0

        for attempt in range(1, self.config.max_attempts + 1):
            if attempt > 1:
                self._sleep(self.config.interval_seconds)

            try:
                job = self._fetch(job_id)
            except requests.RequestException as exc:
                logger.warning(
                    "Status poll %d/%d for job %s failed: %s",
                    attempt,
                    self.config.max_attempts,
                    job_id,
                    exc,
                )
                continue

            raw_status = job.get("status", AssemblyJobStatus.PENDING.value)
            try:
                status = AssemblyJobStatus(raw_status)
            except ValueError:
                logger.warning(
                    "Job %s reported unknown status %r; treating as in progress",
                    job_id,
                    raw_status,
                )
                status = AssemblyJobStatus.PROCESSING

            if status == AssemblyJobStatus.COMPLETED:
                result_url = job.get("result_url")
                if not result_url:
                    raise JobReportedFailure(job_id, "Job completed without a result URL")
                if on_progress:
                    on_progress(100)
                return PollResult(
                    job_id=job_id,
                    status=status,
                    result_url=result_url,
                    attempts=attempt,
                )

            if status == AssemblyJobStatus.FAILED:
                raise JobReportedFailure(job_id, job.get("error") or DEFAULT_FAILURE_MESSAGE)

            elapsed = self._clock() - started
            reported = int(job.get("progress") or 0)
            displayed = max(displayed, simulated_progress(elapsed, expected), reported)
            if on_progress:
                on_progress(displayed)

        raise PollTimeout(job_id, self.config.max_attempts)
