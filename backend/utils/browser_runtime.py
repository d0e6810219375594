"""Headless-Chrome codec runtime: ffmpeg.wasm driven through Selenium."""
from __future__ import annotations

import logging
from typing import Any

from selenium import webdriver
from selenium.common.exceptions import TimeoutException, WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from selenium.webdriver.support.ui import WebDriverWait
from webdriver_manager.chrome import ChromeDriverManager

from utils.errors import CodecExecutionFailed, SandboxUnavailable
from utils.sandbox import (
    CodecResult,
    SandboxConfig,
    decode_transfer,
    encode_transfer,
    require_concrete_origin,
)


logger = logging.getLogger(__name__)


_INJECT_SCRIPT_JS = """
const src = arguments[0];
const done = arguments[arguments.length - 1];
const script = document.createElement('script');
script.src = src;
script.onload = () => done({ok: true});
script.onerror = () => done({error: 'Failed to load ' + src});
document.head.appendChild(script);
"""

_GLOBALS_READY_JS = "return !!(window.FFmpegWASM && window.FFmpegUtil);"

_LOAD_JS = """
const coreURL = arguments[0];
const done = arguments[arguments.length - 1];
(async () => {
  const { FFmpeg } = window.FFmpegWASM;
  const { toBlobURL } = window.FFmpegUtil;
  const ffmpeg = new FFmpeg();
  window.__codecLogs = [];
  ffmpeg.on('log', ({ message }) => window.__codecLogs.push(message));
  await ffmpeg.load({
    coreURL: await toBlobURL(coreURL, 'text/javascript'),
    wasmURL: await toBlobURL(coreURL.replace(/\\.js$/, '.wasm'), 'application/wasm'),
  });
  window.__codec = ffmpeg;
  done({ok: true});
})().catch((e) => done({error: String(e)}));
"""

_EXEC_JS = """
const args = arguments[0];
const done = arguments[arguments.length - 1];
(async () => {
  window.__codecLogs = [];
  const code = await window.__codec.exec(args);
  done({exitCode: code, logs: window.__codecLogs});
})().catch((e) => done({error: String(e), logs: window.__codecLogs || []}));
"""

_WRITE_JS = """
const name = arguments[0];
const payload = arguments[1];
const done = arguments[arguments.length - 1];
(async () => {
  const binary = atob(payload);
  const bytes = new Uint8Array(binary.length);
  for (let i = 0; i < binary.length; i++) bytes[i] = binary.charCodeAt(i);
  await window.__codec.writeFile(name, bytes);
  done({ok: true});
})().catch((e) => done({error: String(e)}));
"""

_READ_JS = """
const name = arguments[0];
const done = arguments[arguments.length - 1];
(async () => {
  const data = await window.__codec.readFile(name);
  const reader = new FileReader();
  reader.onload = () => done({data: String(reader.result).split(',')[1] || ''});
  reader.onerror = () => done({error: 'FileReader failed for ' + name});
  reader.readAsDataURL(new Blob([data]));
})().catch((e) => done({error: String(e)}));
"""

_FETCH_JS = """
const name = arguments[0];
const url = arguments[1];
const done = arguments[arguments.length - 1];
(async () => {
  const data = await window.FFmpegUtil.fetchFile(url);
  await window.__codec.writeFile(name, data);
  done({ok: true, size: data.length});
})().catch((e) => done({error: String(e)}));
"""

_DELETE_JS = """
const name = arguments[0];
const done = arguments[arguments.length - 1];
window.__codec.deleteFile(name)
  .then(() => done({ok: true}))
  .catch((e) => done({error: String(e)}));
"""


class BrowserCodecRuntime:
    def __init__(self, config: SandboxConfig):
        self.config = config
        self._driver = None

    def _build_options(self) -> Options:
        options = Options()
        for arg in self.config.chrome_args:
            options.add_argument(arg)
        return options

    def start(self) -> None:
        origin = require_concrete_origin(self.config.origin_url)
        options = self._build_options()
        try:
            if self.config.remote_url:
                self._driver = webdriver.Remote(
                    command_executor=self.config.remote_url, options=options
                )
            else:
                service = Service(ChromeDriverManager().install())
                self._driver = webdriver.Chrome(service=service, options=options)
            self._driver.get(origin)
        except WebDriverException as exc:
            raise SandboxUnavailable(f"Failed to launch browser: {exc.msg}") from exc

        self._driver.set_script_timeout(self.config.init_timeout_seconds)
        for src in (self.config.ffmpeg_script_url, self.config.util_script_url):
            result = self._run_async(_INJECT_SCRIPT_JS, src, phase="init")
            if "error" in result:
                raise SandboxUnavailable(result["error"])

        try:
            WebDriverWait(self._driver, self.config.init_timeout_seconds).until(
                lambda d: d.execute_script(_GLOBALS_READY_JS)
            )
        except TimeoutException as exc:
            raise SandboxUnavailable(
                f"Codec scripts not ready after {self.config.init_timeout_seconds:g}s"
            ) from exc

    def load(self) -> None:
        result = self._run_async(_LOAD_JS, self.config.core_url, phase="init")
        if "error" in result:
            raise SandboxUnavailable(f"Codec load failed: {result['error']}")
        self._driver.set_script_timeout(self.config.exec_timeout_seconds)
        logger.info("ffmpeg.wasm loaded at %s", self.config.origin_url)

    def _run_async(self, script: str, *args: Any, phase: str = "exec") -> dict:
        try:
            result = self._driver.execute_async_script(script, *args)
        except TimeoutException as exc:
            if phase == "init":
                raise SandboxUnavailable(
                    f"Sandbox initialization timed out after {self.config.init_timeout_seconds:g}s"
                ) from exc
            raise CodecExecutionFailed(
                f"Codec call timed out after {self.config.exec_timeout_seconds:g}s"
            ) from exc
        except WebDriverException as exc:
            if phase == "init":
                raise SandboxUnavailable(f"Browser error: {exc.msg}") from exc
            raise CodecExecutionFailed(f"Browser error: {exc.msg}") from exc
        return result or {}

    def exec(self, args: list[str]) -> CodecResult:
        result = self._run_async(_EXEC_JS, list(args))
        logs = [str(line) for line in result.get("logs", [])]
        if "error" in result:
            raise CodecExecutionFailed(result["error"], logs=logs)
        return CodecResult(exit_code=int(result.get("exitCode", 1)), logs=logs)

    def write_file(self, name: str, data: bytes) -> None:
        result = self._run_async(_WRITE_JS, name, encode_transfer(data))
        if "error" in result:
            raise CodecExecutionFailed(f"Failed to write {name}: {result['error']}")

    def read_file(self, name: str) -> bytes:
        result = self._run_async(_READ_JS, name)
        if "error" in result:
            raise CodecExecutionFailed(f"Failed to read {name}: {result['error']}")
        return decode_transfer(result.get("data", ""))

    def fetch_file(self, name: str, url: str) -> None:
        result = self._run_async(_FETCH_JS, name, url)
        if "error" in result:
            raise CodecExecutionFailed(f"Failed to fetch {url}: {result['error']}")
        logger.debug("Fetched %s into %s (%s bytes)", url, name, result.get("size"))

    def delete_file(self, name: str) -> None:
        result = self._run_async(_DELETE_JS, name)
        if "error" in result:
            raise CodecExecutionFailed(f"Failed to delete {name}: {result['error']}")

    def close(self) -> None:
        if self._driver is None:
            return
        driver, self._driver = self._driver, None
        driver.quit()
