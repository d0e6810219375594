import pytest
import requests

from models.assembly_models import AssemblyJobKind, AssemblyJobStatus
from utils.errors import JobReportedFailure, PollTimeout
from utils.progress_poller import PollerConfig, ProgressPoller, simulated_progress


class _ScriptedFetch:
    """Returns (or raises) the scripted job records in order."""

    def __init__(self, *records):
        self.records = list(records)
        self.calls = 0

    def __call__(self, job_id):
        self.calls += 1
        record = self.records.pop(0)
        if isinstance(record, Exception):
            raise record
        return record


class _SteppingClock:
    def __init__(self, step: float):
        self.now = 0.0
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


def _poller(fetch, clock=None, sleeps=None, **config) -> ProgressPoller:
    config.setdefault("max_attempts", 10)
    config.setdefault("expected_stitch_seconds", 100)
    return ProgressPoller(
        config=PollerConfig(**config),
        fetch=fetch,
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
        clock=clock or _SteppingClock(0),
    )


def _processing(progress=0):
    return {"status": "processing", "progress": progress}


class TestPoll:
    def test_completed_returns_result(self):
        fetch = _ScriptedFetch(
            _processing(10),
            {"status": "completed", "progress": 100, "result_url": "https://cdn.test/final.mp4"},
        )

        result = _poller(fetch).poll("job-1")

        assert result.status == AssemblyJobStatus.COMPLETED
        assert result.result_url == "https://cdn.test/final.mp4"
        assert result.progress == 100
        assert result.attempts == 2

    def test_completed_without_url_is_failure(self):
        fetch = _ScriptedFetch({"status": "completed", "progress": 100})

        with pytest.raises(JobReportedFailure, match="without a result URL"):
            _poller(fetch).poll("job-1")

    def test_failed_message_surfaced_verbatim(self):
        fetch = _ScriptedFetch({"status": "failed", "error": "Video segment 3 file too large: 120.0MB (max 100MB)"})

        with pytest.raises(JobReportedFailure) as exc_info:
            _poller(fetch).poll("job-1")

        assert str(exc_info.value) == "Video segment 3 file too large: 120.0MB (max 100MB)"

    def test_failed_without_message_uses_default(self):
        fetch = _ScriptedFetch({"status": "failed"})

        with pytest.raises(JobReportedFailure, match="Assembly job failed"):
            _poller(fetch).poll("job-1")

    def test_exhausted_attempts_time_out(self):
        fetch = _ScriptedFetch(*[_processing(5) for _ in range(3)])
        sleeps = []

        with pytest.raises(PollTimeout) as exc_info:
            _poller(fetch, sleeps=sleeps, max_attempts=3, interval_seconds=2).poll("job-1")

        assert exc_info.value.attempts == 3
        assert fetch.calls == 3
        assert sleeps == [2, 2]

    def test_transport_errors_count_as_attempts(self):
        fetch = _ScriptedFetch(
            requests.ConnectionError("reset"),
            requests.HTTPError("502"),
            {"status": "completed", "result_url": "https://cdn.test/x.mp4"},
        )

        result = _poller(fetch, max_attempts=3).poll("job-1")

        assert result.attempts == 3

    def test_unknown_status_keeps_polling(self, caplog):
        fetch = _ScriptedFetch(
            {"status": "queued-remotely", "progress": 30},
            {"status": "completed", "result_url": "https://cdn.test/x.mp4"},
        )
        seen = []

        result = _poller(fetch).poll("job-1", on_progress=seen.append)

        assert result.attempts == 2
        assert seen[0] == 30
        assert "unknown status" in caplog.text


class TestProgress:
    def test_display_never_decreases(self):
        # Reported progress drops from 60 to 20; display must hold at 60.
        fetch = _ScriptedFetch(
            _processing(60),
            _processing(20),
            _processing(20),
            {"status": "completed", "result_url": "u"},
        )
        seen = []

        _poller(fetch, clock=_SteppingClock(1)).poll("job-1", on_progress=seen.append)

        assert seen == sorted(seen)
        assert seen[0] == 60
        assert seen[-1] == 100

    def test_simulated_progress_leads_when_server_silent(self):
        fetch = _ScriptedFetch(_processing(0), _processing(0), {"status": "completed", "result_url": "u"})
        seen = []

        _poller(fetch, clock=_SteppingClock(25), expected_stitch_seconds=100).poll(
            "job-1", on_progress=seen.append
        )

        assert seen[0] > 0
        assert seen[0] < seen[1] <= 90

    def test_simulated_progress_capped_at_ninety(self):
        assert simulated_progress(500, 100) == 90
        assert simulated_progress(50, 100) == 45
        assert simulated_progress(0, 100) == 0

    def test_expected_duration_per_kind(self):
        config = PollerConfig(expected_chunk_seconds=30, expected_stitch_seconds=120)

        assert config.expected_seconds(AssemblyJobKind.CHUNK) == 30
        assert config.expected_seconds(AssemblyJobKind.STITCH) == 120


def test_default_fetch_sends_bearer_token():
    class _Session:
        def __init__(self):
            self.calls = []

        def get(self, url, headers=None, timeout=None):
            self.calls.append((url, headers))

            class _Response:
                def raise_for_status(self):
                    pass

                def json(self):
                    return {"ok": True, "job": {"status": "completed", "result_url": "u"}}

            return _Response()

    session = _Session()
    poller = ProgressPoller(
        config=PollerConfig(api_base_url="http://api.test/", api_token="secret"),
        session=session,
        sleep=lambda _: None,
    )

    poller.poll("job-7")

    assert session.calls == [
        ("http://api.test/assembly/jobs/job-7", {"Authorization": "Bearer secret"})
    ]
