from __future__ import annotations

import base64
import logging
import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Protocol, TypeVar
from urllib.parse import urlparse

import dotenv

from utils.errors import CodecExecutionFailed, SandboxUnavailable


dotenv.load_dotenv()
logger = logging.getLogger(__name__)

T = TypeVar("T")

FFMPEG_WASM_SCRIPT_URL = "https://unpkg.com/@ffmpeg/ffmpeg@0.12.6/dist/umd/ffmpeg.js"
FFMPEG_UTIL_SCRIPT_URL = "https://unpkg.com/@ffmpeg/util@0.12.1/dist/umd/index.js"
FFMPEG_CORE_URL = "https://unpkg.com/@ffmpeg/core@0.12.4/dist/umd/ffmpeg-core.js"

CHROME_BINARIES = ("google-chrome", "google-chrome-stable", "chromium", "chromium-browser", "chrome")


class SandboxBackend(str, Enum):
    BROWSER = "browser"  # headless Chrome running ffmpeg.wasm
    LOCAL = "local"  # ffmpeg binary in a scratch directory


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class SandboxConfig:
    backend: SandboxBackend = SandboxBackend.BROWSER
    origin_url: str = "https://example.com"
    remote_url: str = ""
    init_timeout_seconds: float = 30.0
    exec_timeout_seconds: float = 300.0
    ffmpeg_bin: str = "ffmpeg"
    ffmpeg_script_url: str = FFMPEG_WASM_SCRIPT_URL
    util_script_url: str = FFMPEG_UTIL_SCRIPT_URL
    core_url: str = FFMPEG_CORE_URL
    chrome_args: list[str] = field(
        default_factory=lambda: [
            "--headless=new",
            "--disable-gpu",
            "--no-sandbox",
            "--disable-dev-shm-usage",
        ]
    )

    @classmethod
    def from_env(cls) -> SandboxConfig:
        return cls(
            backend=SandboxBackend(os.getenv("SANDBOX_BACKEND", "browser").lower()),
            origin_url=os.getenv("SANDBOX_ORIGIN_URL", "https://example.com"),
            remote_url=os.getenv("SANDBOX_REMOTE_URL", ""),
            init_timeout_seconds=float(os.getenv("SANDBOX_INIT_TIMEOUT_SECONDS", "30")),
            exec_timeout_seconds=float(os.getenv("SANDBOX_EXEC_TIMEOUT_SECONDS", "300")),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffmpeg_script_url=os.getenv("FFMPEG_WASM_SCRIPT_URL", FFMPEG_WASM_SCRIPT_URL),
            util_script_url=os.getenv("FFMPEG_UTIL_SCRIPT_URL", FFMPEG_UTIL_SCRIPT_URL),
            core_url=os.getenv("FFMPEG_CORE_URL", FFMPEG_CORE_URL),
        )


@dataclass
class CodecResult:
    exit_code: int
    logs: list[str] = field(default_factory=list)


class CodecRuntime(Protocol):
    def start(self) -> None: ...

    def load(self) -> None: ...

    def exec(self, args: list[str]) -> CodecResult: ...

    def write_file(self, name: str, data: bytes) -> None: ...

    def read_file(self, name: str) -> bytes: ...

    def fetch_file(self, name: str, url: str) -> None: ...

    def delete_file(self, name: str) -> None: ...

    def close(self) -> None: ...


def encode_transfer(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_transfer(payload: str) -> bytes:
    return base64.b64decode(payload)


def require_concrete_origin(origin_url: str) -> str:
    parsed = urlparse(origin_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise SandboxUnavailable(
            f"Sandbox origin must be a network-reachable http(s) page, got {origin_url!r}"
        )
    return origin_url


class SandboxSession:
    """One exclusive codec session: UNINITIALIZED -> LOADING -> READY -> CLOSED."""

    def __init__(self, runtime: CodecRuntime):
        self._runtime = runtime
        self.state = SessionState.UNINITIALIZED
        self._files: list[str] = []

    def open(self) -> None:
        if self.state != SessionState.UNINITIALIZED:
            raise SandboxUnavailable(f"Cannot open session in {self.state.value} state")
        self.state = SessionState.LOADING
        try:
            self._runtime.start()
            self._runtime.load()
        except SandboxUnavailable:
            self.close()
            raise
        except Exception as exc:
            self.close()
            raise SandboxUnavailable(f"Sandbox initialization failed: {exc}") from exc
        self.state = SessionState.READY

    def _require_ready(self) -> None:
        if self.state != SessionState.READY:
            raise SandboxUnavailable(f"Sandbox session is {self.state.value}")

    def exec(self, args: list[str]) -> CodecResult:
        self._require_ready()
        logger.debug("codec exec: %s", " ".join(args))
        result = self._runtime.exec(args)
        if result.exit_code != 0:
            tail = result.logs[-10:]
            raise CodecExecutionFailed(
                f"Codec exited with code {result.exit_code}: {' | '.join(tail)}",
                logs=result.logs,
            )
        return result

    def probe(self, args: list[str]) -> CodecResult:
        """Run a diagnostic pass; a non-zero exit is returned, not raised."""
        self._require_ready()
        return self._runtime.exec(args)

    def _track(self, name: str) -> None:
        if name not in self._files:
            self._files.append(name)

    def write_file(self, name: str, data: bytes) -> None:
        self._require_ready()
        self._runtime.write_file(name, data)
        self._track(name)

    def fetch_file(self, name: str, url: str) -> None:
        self._require_ready()
        self._track(name)
        self._runtime.fetch_file(name, url)

    def read_file(self, name: str) -> bytes:
        self._require_ready()
        return self._runtime.read_file(name)

    def register_output(self, name: str) -> None:
        self._track(name)

    def purge(self) -> list[str]:
        """Best-effort removal of every file this session created."""
        failed: list[str] = []
        if self.state != SessionState.READY:
            return failed
        for name in list(self._files):
            try:
                self._runtime.delete_file(name)
                self._files.remove(name)
            except Exception as exc:
                logger.warning("Failed to purge sandbox file %s: %s", name, exc)
                failed.append(name)
        return failed

    def close(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        try:
            self._runtime.close()
        except Exception as exc:
            logger.warning("Error closing sandbox runtime: %s", exc)


def _default_runtime_factory(config: SandboxConfig) -> CodecRuntime:
    if config.backend == SandboxBackend.LOCAL:
        from utils.local_runtime import LocalCodecRuntime

        return LocalCodecRuntime(config)

    from utils.browser_runtime import BrowserCodecRuntime

    return BrowserCodecRuntime(config)


class SandboxSessionManager:
    def __init__(
        self,
        config: SandboxConfig | None = None,
        runtime_factory: Callable[[SandboxConfig], CodecRuntime] | None = None,
    ):
        self.config = config or SandboxConfig.from_env()
        self._runtime_factory = runtime_factory or _default_runtime_factory

    @property
    def backend(self) -> str:
        return self.config.backend.value

    def is_available(self) -> bool:
        if self.config.backend == SandboxBackend.LOCAL:
            return shutil.which(self.config.ffmpeg_bin) is not None
        if self.config.remote_url:
            return True
        return any(shutil.which(name) for name in CHROME_BINARIES)

    @contextmanager
    def session(self) -> Iterator[SandboxSession]:
        try:
            runtime = self._runtime_factory(self.config)
        except SandboxUnavailable:
            raise
        except Exception as exc:
            raise SandboxUnavailable(f"Failed to create sandbox runtime: {exc}") from exc

        session = SandboxSession(runtime)
        try:
            session.open()
            logger.info("Sandbox session ready (backend=%s)", self.backend)
            yield session
        finally:
            session.close()

    def with_session(self, fn: Callable[[SandboxSession], T]) -> T:
        with self.session() as session:
            return fn(session)
