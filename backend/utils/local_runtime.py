"""Codec runtime backed by a local ffmpeg binary and a scratch directory."""
from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

import requests

from utils import gcs_utils
from utils.errors import CodecExecutionFailed, SandboxUnavailable
from utils.sandbox import CodecResult, SandboxConfig


logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 120
FETCH_CHUNK_BYTES = 1024 * 1024


class LocalCodecRuntime:
    def __init__(self, config: SandboxConfig, session: requests.Session | None = None):
        self.config = config
        self._http = session or requests.Session()
        self._tmpdir: tempfile.TemporaryDirectory | None = None
        self._binary: str | None = None

    @property
    def workdir(self) -> Path:
        if self._tmpdir is None:
            raise SandboxUnavailable("Local codec runtime not started")
        return Path(self._tmpdir.name)

    def _path(self, name: str) -> Path:
        if Path(name).name != name:
            raise CodecExecutionFailed(f"Invalid sandbox file name: {name}")
        return self.workdir / name

    def start(self) -> None:
        self._binary = shutil.which(self.config.ffmpeg_bin)
        if self._binary is None:
            raise SandboxUnavailable(f"ffmpeg binary not found: {self.config.ffmpeg_bin}")
        self._tmpdir = tempfile.TemporaryDirectory(prefix="assembly-")

    def load(self) -> None:
        try:
            result = subprocess.run(
                [self._binary, "-version"],
                capture_output=True,
                text=True,
                timeout=self.config.init_timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SandboxUnavailable(f"ffmpeg failed to start: {exc}") from exc
        if result.returncode != 0:
            raise SandboxUnavailable(f"ffmpeg -version exited with {result.returncode}")
        logger.info("Local codec ready: %s", result.stdout.splitlines()[0] if result.stdout else self._binary)

    def exec(self, args: list[str]) -> CodecResult:
        cmd = [self._binary, "-nostdin", "-y", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.workdir,
                capture_output=True,
                text=True,
                timeout=self.config.exec_timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise CodecExecutionFailed(
                f"ffmpeg timed out after {self.config.exec_timeout_seconds:g}s"
            ) from exc
        return CodecResult(exit_code=result.returncode, logs=result.stderr.splitlines())

    def write_file(self, name: str, data: bytes) -> None:
        self._path(name).write_bytes(data)

    def read_file(self, name: str) -> bytes:
        path = self._path(name)
        if not path.exists():
            raise CodecExecutionFailed(f"Sandbox file not found: {name}")
        return path.read_bytes()

    def fetch_file(self, name: str, url: str) -> None:
        path = self._path(name)
        gcs_location = gcs_utils.parse_gcs_url(url)
        if gcs_location:
            data = gcs_utils.download_file(*gcs_location)
            if data is None:
                raise CodecExecutionFailed(f"Failed to fetch {url}")
            path.write_bytes(data)
            return

        try:
            with self._http.get(url, stream=True, timeout=FETCH_TIMEOUT_SECONDS) as response:
                response.raise_for_status()
                with path.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=FETCH_CHUNK_BYTES):
                        fh.write(chunk)
        except requests.RequestException as exc:
            raise CodecExecutionFailed(f"Failed to fetch {url}: {exc}") from exc

    def delete_file(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def close(self) -> None:
        if self._tmpdir is None:
            return
        tmpdir, self._tmpdir = self._tmpdir, None
        tmpdir.cleanup()
