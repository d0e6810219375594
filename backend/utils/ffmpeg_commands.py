"""Codec command builders and log parsing for the assembly sandbox."""
from __future__ import annotations

import re
from typing import Iterable, Sequence

from models.assembly_models import ChunkPlanEntry, MediaSegmentInput


AUDIO_INPUT_FILE = "input.mp3"
MUX_AUDIO_FILE = "audio.mp3"
CONCAT_LIST_FILE = "concat.txt"
VIDEO_ONLY_FILE = "video_only.mp4"
FINAL_FILE = "final.mp4"

DEFAULT_AUDIO_BITRATE = "192k"

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


def chunk_filename(index: int) -> str:
    return f"chunk_{index:03d}.mp3"


def segment_filename(index: int) -> str:
    return f"segment_{index:03d}.mp4"


def format_ms(value_ms: int) -> str:
    seconds, millis = divmod(value_ms, 1000)
    if not millis:
        return str(seconds)
    return f"{seconds}.{millis:03d}".rstrip("0")


def to_chunk_ms(chunk_duration_sec: float) -> int:
    """Whole-millisecond chunk length shared by admission, planning and extraction."""
    return round(chunk_duration_sec * 1000)


def build_chunk_args(
    index: int,
    start_ms: int,
    duration_ms: int,
    input_file: str = AUDIO_INPUT_FILE,
) -> list[str]:
    return [
        "-i",
        input_file,
        "-ss",
        format_ms(start_ms),
        "-t",
        format_ms(duration_ms),
        "-acodec",
        "copy",
        chunk_filename(index),
    ]


def build_probe_args(input_file: str) -> list[str]:
    return ["-i", input_file, "-f", "null", "-"]


def build_concat_list(segments: Sequence[MediaSegmentInput]) -> str:
    ordered = sorted(segments, key=lambda s: s.index)
    return "\n".join(f"file '{segment_filename(s.index)}'" for s in ordered)


def build_concat_args(output_file: str = VIDEO_ONLY_FILE) -> list[str]:
    return [
        "-f",
        "concat",
        "-safe",
        "0",
        "-i",
        CONCAT_LIST_FILE,
        "-c",
        "copy",
        output_file,
    ]


def build_mux_args(
    video_file: str = VIDEO_ONLY_FILE,
    audio_file: str = MUX_AUDIO_FILE,
    output_file: str = FINAL_FILE,
    audio_bitrate: str = DEFAULT_AUDIO_BITRATE,
) -> list[str]:
    # -shortest: the output is truncated to min(video, audio), never padded.
    return [
        "-i",
        video_file,
        "-i",
        audio_file,
        "-c:v",
        "copy",
        "-c:a",
        "aac",
        "-b:a",
        audio_bitrate,
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-shortest",
        output_file,
    ]


def parse_duration_ms(logs: Iterable[str]) -> int | None:
    """Return the first `Duration: HH:MM:SS.ff` found in the codec log, in ms."""
    for line in logs:
        match = _DURATION_RE.search(line)
        if not match:
            continue
        hours = int(match.group(1))
        minutes = int(match.group(2))
        seconds = float(match.group(3))
        return int(round((hours * 3600 + minutes * 60 + seconds) * 1000))
    return None


def create_chunking_plan(
    total_duration_ms: int, chunk_duration_ms: int
) -> list[ChunkPlanEntry]:
    if chunk_duration_ms <= 0:
        raise ValueError("chunk_duration_ms must be positive")

    chunks: list[ChunkPlanEntry] = []
    current = 0
    index = 0
    while current < total_duration_ms:
        end = min(current + chunk_duration_ms, total_duration_ms)
        chunks.append(
            ChunkPlanEntry(
                index=index,
                start_time_ms=current,
                end_time_ms=end,
                duration_ms=end - current,
            )
        )
        current = end
        index += 1
    return chunks


def calculate_expected_duration(segments: Sequence[MediaSegmentInput]) -> int:
    return sum(s.duration_ms for s in segments)


def estimate_output_size(
    segments: Sequence[MediaSegmentInput], avg_bitrate_kbps: int = 5000
) -> int:
    total_seconds = calculate_expected_duration(segments) / 1000
    return round(avg_bitrate_kbps * 1000 * total_seconds / 8)
