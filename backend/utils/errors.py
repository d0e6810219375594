from __future__ import annotations


class AssemblyError(Exception):
    pass


class AdmissionRejected(AssemblyError):
    """Input exceeds a size/count/duration ceiling. Not retryable."""


class SegmentValidationError(AdmissionRejected):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Invalid segments: {'; '.join(errors)}")


class SandboxUnavailable(AssemblyError):
    """The codec sandbox could not be launched or initialized."""


class CodecExecutionFailed(AssemblyError):
    def __init__(self, message: str, logs: list[str] | None = None):
        self.logs = logs or []
        super().__init__(message)


class DurationProbeError(CodecExecutionFailed):
    pass


class UploadFailed(AssemblyError):
    def __init__(self, key: str, attempts: int, cause: str | None = None):
        self.key = key
        self.attempts = attempts
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to upload {key} after {attempts} attempts{detail}")


class FallbackDownloadError(AssemblyError):
    pass


class PollTimeout(AssemblyError):
    """Polling budget exhausted. The job may still finish later."""

    def __init__(self, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Timed out waiting for job {job_id} after {attempts} polls"
        )


class JobReportedFailure(AssemblyError):
    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(message)


class JobNotFoundError(AssemblyError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Assembly job not found: {job_id}")


class JobAlreadyTerminalError(AssemblyError):
    def __init__(self, job_id, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is already {status}")


class JobUpdateConflict(AssemblyError):
    def __init__(self, job_id, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Job {job_id} kept changing underneath {attempts} update attempts")
