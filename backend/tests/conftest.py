from __future__ import annotations

import pytest
import requests

from models.assembly_models import MediaSegmentInput
from operators.assembly_operator import AssemblyOrchestrator
from utils.admission import AdmissionGuard, AdmissionLimits
from utils.errors import CodecExecutionFailed, SandboxUnavailable
from utils.sandbox import CodecResult, SandboxBackend, SandboxConfig, SandboxSessionManager
from utils.storage_uploader import StorageConfig, StorageUploader


# =============================================================================
# FAKES
# =============================================================================


class FakeResponse:
    def __init__(self, status_code: int = 200, headers: dict | None = None, content: bytes = b""):
        self.status_code = status_code
        self.headers = headers or {}
        self.content = content

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False


class FakeHttp:
    """Stands in for requests.Session: HEAD sizes and GET bodies by URL."""

    def __init__(self, sizes: dict | None = None, bodies: dict | None = None):
        self.sizes = sizes or {}
        self.bodies = bodies or {}
        self.head_calls: list[str] = []
        self.get_calls: list[str] = []

    def head(self, url, allow_redirects=True, timeout=None):
        self.head_calls.append(url)
        size = self.sizes.get(url)
        if isinstance(size, Exception):
            raise size
        headers = {} if size is None else {"content-length": str(size)}
        return FakeResponse(headers=headers)

    def get(self, url, timeout=None, stream=False, headers=None):
        self.get_calls.append(url)
        if url not in self.bodies:
            raise requests.ConnectionError(f"unreachable: {url}")
        return FakeResponse(content=self.bodies[url])


def _format_duration(ms: int) -> str:
    total = ms / 1000
    hours = int(total // 3600)
    minutes = int(total % 3600 // 60)
    seconds = total - hours * 3600 - minutes * 60
    return f"{hours:02d}:{minutes:02d}:{seconds:05.2f}"


class FakeCodecRuntime:
    """
    In-memory codec runtime.

    Understands the chunk, concat, mux and probe command shapes well enough
    to produce deterministic outputs that tests can assert on.
    """

    def __init__(
        self,
        remote: dict[str, bytes] | None = None,
        durations: dict[str, int] | None = None,
        fail_start: Exception | None = None,
        fail_exec: int = 0,
        fail_close: bool = False,
        fail_delete: bool = False,
        fail_fetch: bool = False,
    ):
        self.remote = remote or {}
        self.durations = durations or {}
        self.fail_start = fail_start
        self.fail_exec = fail_exec
        self.fail_close = fail_close
        self.fail_delete = fail_delete
        self.fail_fetch = fail_fetch
        self.files: dict[str, bytes] = {}
        self.file_durations: dict[str, int] = {}
        self.exec_calls: list[list[str]] = []
        self.fetched: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.start_count = 0
        self.load_count = 0
        self.close_count = 0

    def start(self) -> None:
        self.start_count += 1
        if self.fail_start:
            raise self.fail_start
        self.files = {}
        self.file_durations = {}

    def load(self) -> None:
        self.load_count += 1

    def exec(self, args: list[str]) -> CodecResult:
        self.exec_calls.append(list(args))
        if self.fail_exec > 0:
            self.fail_exec -= 1
            return CodecResult(exit_code=1, logs=["Conversion failed!"])

        if args[-2:] == ["null", "-"]:
            source = args[args.index("-i") + 1]
            duration = self.file_durations.get(source)
            logs = [f"Input #0, mp3, from '{source}':"]
            if duration is not None:
                logs.append(
                    f"  Duration: {_format_duration(duration)}, start: 0.025056, bitrate: 128 kb/s"
                )
            return CodecResult(exit_code=0, logs=logs)

        output = args[-1]
        if args[:2] == ["-f", "concat"]:
            listing = self.files["concat.txt"].decode("utf-8").splitlines()
            names = [line.split("'")[1] for line in listing]
            self.files[output] = b"".join(self.files[name] for name in names)
        elif "-map" in args:
            video = args[args.index("-i") + 1]
            self.files[output] = self.files[video] + b"|with-audio"
        elif "-ss" in args:
            start = args[args.index("-ss") + 1]
            length = args[args.index("-t") + 1]
            self.files[output] = f"chunk:{start}:{length}".encode("utf-8")
        return CodecResult(exit_code=0, logs=[])

    def write_file(self, name: str, data: bytes) -> None:
        self.files[name] = data

    def read_file(self, name: str) -> bytes:
        return self.files[name]

    def fetch_file(self, name: str, url: str) -> None:
        self.fetched.append((name, url))
        if self.fail_fetch:
            raise CodecExecutionFailed(f"fetch failed: {url}")
        self.files[name] = self.remote.get(url, b"")
        if url in self.durations:
            self.file_durations[name] = self.durations[url]

    def delete_file(self, name: str) -> None:
        if self.fail_delete:
            raise OSError(f"cannot delete {name}")
        self.deleted.append(name)
        self.files.pop(name, None)

    def close(self) -> None:
        self.close_count += 1
        if self.fail_close:
            raise RuntimeError("runtime already broken")


class RecordingUpload:
    """gcs_utils.upload_file stand-in; fails the first `failures` calls."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[str] = []
        self.stored: dict[str, tuple[bytes, str]] = {}

    def __call__(self, bucket_name, contents, destination_blob_name, content_type):
        self.calls.append(destination_blob_name)
        if self.failures > 0:
            self.failures -= 1
            return {}
        self.stored[destination_blob_name] = (contents, content_type)
        return {"path": destination_blob_name, "size": len(contents)}


def make_segments(durations_ms: list[int], base_url: str = "https://cdn.test/seg") -> list[MediaSegmentInput]:
    segments = []
    start = 0
    for index, duration in enumerate(durations_ms):
        segments.append(
            MediaSegmentInput(
                index=index,
                url=f"{base_url}{index}.mp4",
                duration_ms=duration,
                start_time_ms=start,
                end_time_ms=start + duration,
            )
        )
        start += duration
    return segments


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def runtime() -> FakeCodecRuntime:
    return FakeCodecRuntime()


@pytest.fixture
def recording_upload() -> RecordingUpload:
    return RecordingUpload()


@pytest.fixture
def uploader(recording_upload) -> StorageUploader:
    return StorageUploader(
        config=StorageConfig(bucket="test-bucket", max_attempts=3, backoff_seconds=0),
        upload=recording_upload,
        sleep=lambda _: None,
    )


@pytest.fixture
def session_manager(runtime) -> SandboxSessionManager:
    return SandboxSessionManager(
        config=SandboxConfig(backend=SandboxBackend.LOCAL),
        runtime_factory=lambda _config: runtime,
    )


@pytest.fixture
def orchestrator(fake_http, session_manager, uploader) -> AssemblyOrchestrator:
    return AssemblyOrchestrator(
        guard=AdmissionGuard(AdmissionLimits(), session=fake_http),
        sessions=session_manager,
        uploader=uploader,
        http=fake_http,
    )


@pytest.fixture
def unavailable_manager() -> SandboxSessionManager:
    def _factory(_config):
        raise SandboxUnavailable("no browser")

    return SandboxSessionManager(
        config=SandboxConfig(backend=SandboxBackend.LOCAL),
        runtime_factory=_factory,
    )


@pytest.fixture
def db_engine():
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool

    from database.base import Base
    import database.models  # noqa: F401

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine):
    from sqlalchemy.orm import sessionmaker

    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    try:
        yield session
    finally:
        session.close()
