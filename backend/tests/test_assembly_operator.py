import json
import random

import pytest

from conftest import FakeCodecRuntime, make_segments
from models.assembly_models import AssemblyMode, ProgressStage
from operators.assembly_operator import build_assembly_manifest
from utils.admission import AdmissionGuard, AdmissionLimits
from utils.errors import (
    AdmissionRejected,
    CodecExecutionFailed,
    DurationProbeError,
    SandboxUnavailable,
    UploadFailed,
)


AUDIO_URL = "https://cdn.test/song.mp3"


def _with_remote(runtime: FakeCodecRuntime, segments) -> None:
    for segment in segments:
        runtime.remote[segment.url] = f"<{segment.index}>".encode("utf-8")


class TestChunkAudio:
    def test_chunks_are_contiguous_and_in_order(self, orchestrator, runtime, recording_upload):
        runtime.remote[AUDIO_URL] = b"mp3"

        chunks = orchestrator.chunk_audio(AUDIO_URL, 10, 25_000, job_id="job-1")

        assert [c.index for c in chunks] == [0, 1, 2]
        assert chunks[0].start_time_ms == 0
        for prev, cur in zip(chunks, chunks[1:]):
            assert prev.end_time_ms == cur.start_time_ms
        assert chunks[-1].end_time_ms == 25_000
        assert chunks[-1].duration_ms == 5_000
        assert sum(c.duration_ms for c in chunks) == 25_000

    def test_uploads_under_job_prefix(self, orchestrator, runtime, recording_upload):
        runtime.remote[AUDIO_URL] = b"mp3"

        chunks = orchestrator.chunk_audio(AUDIO_URL, 10, 20_000, job_id="job-1")

        assert recording_upload.calls == [
            "audio-chunks/job-1/chunk_000.mp3",
            "audio-chunks/job-1/chunk_001.mp3",
        ]
        assert chunks[1].url == (
            "https://storage.googleapis.com/test-bucket/audio-chunks/job-1/chunk_001.mp3"
        )
        assert recording_upload.stored["audio-chunks/job-1/chunk_001.mp3"] == (
            b"chunk:10:10",
            "audio/mpeg",
        )

    def test_audio_fetched_once_and_session_torn_down(self, orchestrator, runtime):
        orchestrator.chunk_audio(AUDIO_URL, 5, 20_000)

        assert runtime.fetched == [("input.mp3", AUDIO_URL)]
        assert len(runtime.exec_calls) == 4
        assert runtime.close_count == 1
        assert "input.mp3" in runtime.deleted
        assert "chunk_003.mp3" in runtime.deleted

    def test_timestamped_keys_without_job_id(self, orchestrator, recording_upload):
        orchestrator.chunk_audio(AUDIO_URL, 10, 10_000)

        (key,) = recording_upload.calls
        assert key.startswith("audio-chunks/")
        assert key.endswith("_chunk_000.mp3")

    def test_rejected_before_session_opens(self, orchestrator, runtime):
        with pytest.raises(AdmissionRejected):
            orchestrator.chunk_audio(AUDIO_URL, 1, 300_000)

        assert runtime.start_count == 0

    def test_codec_failure_still_tears_down(self, orchestrator, runtime):
        runtime.fail_exec = 1

        with pytest.raises(CodecExecutionFailed):
            orchestrator.chunk_audio(AUDIO_URL, 10, 20_000)

        assert runtime.close_count == 1

    def test_extracted_offsets_match_reported_times(self, orchestrator, runtime):
        chunks = orchestrator.chunk_audio(AUDIO_URL, 2.5004, 10_000)

        starts = [call[call.index("-ss") + 1] for call in runtime.exec_calls]
        lengths = [call[call.index("-t") + 1] for call in runtime.exec_calls]
        assert [c.start_time_ms for c in chunks] == [0, 2500, 5000, 7500]
        assert starts == ["0", "2.5", "5", "7.5"]
        assert lengths == ["2.5"] * 4

    def test_chunk_count_stays_within_admitted_ceiling(self, orchestrator, runtime, fake_http):
        orchestrator.guard = AdmissionGuard(
            AdmissionLimits(max_total_segments=10), session=fake_http
        )

        with pytest.raises(AdmissionRejected, match="Too many chunks: 11"):
            orchestrator.chunk_audio(AUDIO_URL, 2.0004, 20_004)

        assert runtime.start_count == 0

    def test_last_chunk_extracts_only_the_remainder(self, orchestrator, runtime):
        orchestrator.chunk_audio(AUDIO_URL, 10, 25_000)

        last = runtime.exec_calls[-1]
        assert last[last.index("-ss") + 1] == "20"
        assert last[last.index("-t") + 1] == "5"

    def test_failed_fetch_still_purges(self, orchestrator, runtime):
        runtime.fail_fetch = True

        with pytest.raises(CodecExecutionFailed):
            orchestrator.chunk_audio(AUDIO_URL, 10, 20_000)

        assert runtime.deleted == ["input.mp3"]
        assert runtime.close_count == 1

    def test_reports_progress_stages(self, orchestrator):
        seen = []

        orchestrator.chunk_audio(
            AUDIO_URL, 10, 20_000, on_progress=lambda stage, pct, msg: seen.append((stage, pct))
        )

        stages = [stage for stage, _ in seen]
        assert stages[0] == ProgressStage.DOWNLOADING
        assert ProgressStage.CHUNKING in stages
        assert stages[-1] == ProgressStage.UPLOADING
        assert seen[-1][1] == 100


class TestStitchVideos:
    def test_shuffled_input_matches_sorted_output(self, orchestrator, runtime, recording_upload):
        segments = make_segments([5000] * 5)
        _with_remote(runtime, segments)
        shuffled = segments[:]
        random.Random(7).shuffle(shuffled)

        result = orchestrator.stitch_videos(shuffled, job_id="job-2")

        data, content_type = recording_upload.stored["music-videos/job-2/final.mp4"]
        assert data == b"<0><1><2><3><4>"
        assert content_type == "video/mp4"
        assert runtime.files == {}
        assert result.segment_count == 5
        assert result.mode == AssemblyMode.FULL
        assert result.is_preview is False

    def test_concat_list_written_ascending(self, orchestrator, runtime):
        segments = make_segments([5000, 5000, 5000])
        _with_remote(runtime, segments)
        written = {}
        original_write = runtime.write_file

        def _capture(name, data):
            written[name] = data
            original_write(name, data)

        runtime.write_file = _capture

        orchestrator.stitch_videos(list(reversed(segments)))

        assert written["concat.txt"].decode("utf-8").splitlines() == [
            "file 'segment_000.mp4'",
            "file 'segment_001.mp4'",
            "file 'segment_002.mp4'",
        ]

    def test_duration_without_audio_is_sum(self, orchestrator, runtime):
        segments = make_segments([5000, 4000, 3000])
        _with_remote(runtime, segments)

        result = orchestrator.stitch_videos(segments)

        assert result.duration_ms == 12_000
        assert result.has_audio is False
        assert result.file_size == len(b"<0><1><2>")

    def test_audio_shorter_than_video_truncates(self, orchestrator, runtime):
        segments = make_segments([5000] * 10)
        _with_remote(runtime, segments)
        runtime.durations[AUDIO_URL] = 48_000

        result = orchestrator.stitch_videos(segments, audio_url=AUDIO_URL)

        assert result.duration_ms == 48_000
        assert result.has_audio is True
        mux_call = runtime.exec_calls[-1]
        assert "-shortest" in mux_call

    def test_audio_longer_than_video_keeps_video_duration(self, orchestrator, runtime):
        segments = make_segments([5000] * 4)
        _with_remote(runtime, segments)
        runtime.durations[AUDIO_URL] = 60_000

        result = orchestrator.stitch_videos(segments, audio_url=AUDIO_URL)

        assert result.duration_ms == 20_000

    def test_custom_output_key(self, orchestrator, runtime, recording_upload):
        segments = make_segments([5000])
        _with_remote(runtime, segments)

        result = orchestrator.stitch_videos(segments, output_key="exports/final-cut.mp4")

        assert recording_upload.calls == ["exports/final-cut.mp4"]
        assert result.url.endswith("/exports/final-cut.mp4")

    def test_sandbox_unavailable_surfaces_distinctly(self, orchestrator, unavailable_manager):
        orchestrator.sessions = unavailable_manager

        with pytest.raises(SandboxUnavailable):
            orchestrator.stitch_videos(make_segments([5000]))

    def test_upload_exhaustion_raises_upload_failed(self, orchestrator, runtime, recording_upload):
        segments = make_segments([5000])
        _with_remote(runtime, segments)
        recording_upload.failures = 3

        with pytest.raises(UploadFailed):
            orchestrator.stitch_videos(segments)

        assert len(runtime.exec_calls) == 1


class TestAudioDuration:
    def test_thirty_seconds(self, orchestrator, runtime):
        runtime.durations[AUDIO_URL] = 30_000

        assert orchestrator.get_audio_duration(AUDIO_URL) == 30_000
        assert runtime.close_count == 1

    def test_too_short_is_implausible(self, orchestrator, runtime):
        runtime.durations[AUDIO_URL] = 3_000

        with pytest.raises(AdmissionRejected, match="Implausible"):
            orchestrator.get_audio_duration(AUDIO_URL)

    def test_twenty_minutes_is_implausible(self, orchestrator, runtime):
        runtime.durations[AUDIO_URL] = 20 * 60 * 1000

        with pytest.raises(AdmissionRejected, match="Implausible"):
            orchestrator.get_audio_duration(AUDIO_URL)

    def test_failed_fetch_still_purges(self, orchestrator, runtime):
        runtime.fail_fetch = True

        with pytest.raises(CodecExecutionFailed):
            orchestrator.get_audio_duration(AUDIO_URL)

        assert runtime.deleted == ["input.mp3"]
        assert runtime.close_count == 1

    def test_missing_duration_is_probe_error(self, orchestrator):
        with pytest.raises(DurationProbeError):
            orchestrator.get_audio_duration(AUDIO_URL)

    def test_probe_error_is_codec_failure(self):
        assert issubclass(DurationProbeError, CodecExecutionFailed)


class TestManifest:
    def test_manifest_sorted_with_camel_case_keys(self):
        segments = make_segments([5000, 3000])

        manifest = build_assembly_manifest("job-9", list(reversed(segments)), AUDIO_URL)
        payload = json.loads(manifest.to_json())

        assert payload["version"] == 1
        assert payload["jobId"] == "job-9"
        assert payload["totalDurationMs"] == 8000
        assert payload["segmentCount"] == 2
        assert payload["audioSyncMode"] == "embedded"
        assert [s["index"] for s in payload["segments"]] == [0, 1]
        assert payload["segments"][1]["startTimeMs"] == 5000

    def test_manifest_uses_measured_duration(self):
        manifest = build_assembly_manifest("job-9", make_segments([5000, 5000]), total_duration_ms=9000)

        assert manifest.total_duration_ms == 9000
