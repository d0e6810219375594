import pytest

from conftest import FakeHttp, make_segments
from models.assembly_models import AssemblyMode
from operators.fallback_operator import (
    FALLBACK_MESSAGE,
    assemble_fallback,
    can_use_full_pipeline,
)
from utils.errors import AdmissionRejected, FallbackDownloadError


def _http_for(segments) -> FakeHttp:
    return FakeHttp(bodies={s.url: f"segment-{s.index}".encode("utf-8") for s in segments})


def test_returns_first_segment_only():
    segments = make_segments([5000] * 5)
    http = _http_for(segments)

    result = assemble_fallback(list(reversed(segments)), http=http)

    assert result.content == b"segment-0"
    assert result.is_preview is True
    assert result.mode == AssemblyMode.FALLBACK_PREVIEW
    assert result.segment_count == 5
    assert result.downloaded_count == 5
    assert result.message == FALLBACK_MESSAGE


def test_downloads_sequentially_in_index_order():
    segments = make_segments([5000, 5000, 5000])
    http = _http_for(segments)

    assemble_fallback([segments[1], segments[2], segments[0]], http=http)

    assert http.get_calls == [s.url for s in segments]


def test_logs_preview_warning(caplog):
    segments = make_segments([5000, 5000])

    with caplog.at_level("WARNING", logger="operators.fallback_operator"):
        assemble_fallback(segments, http=_http_for(segments))

    assert "Full video merge unavailable" in caplog.text


def test_empty_segments_rejected():
    with pytest.raises(AdmissionRejected):
        assemble_fallback([], http=FakeHttp())


def test_download_failure():
    segments = make_segments([5000, 5000])
    http = FakeHttp(bodies={segments[0].url: b"ok"})

    with pytest.raises(FallbackDownloadError):
        assemble_fallback(segments, http=http)


def test_can_use_full_pipeline_delegates(session_manager, monkeypatch):
    monkeypatch.setattr(session_manager, "is_available", lambda: True)
    assert can_use_full_pipeline(session_manager) is True

    monkeypatch.setattr(session_manager, "is_available", lambda: False)
    assert can_use_full_pipeline(session_manager) is False
