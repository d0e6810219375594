#!/usr/bin/env python3


import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from models.assembly_models import AssemblyJobKind, MediaSegmentInput, ProgressStage
from operators.assembly_operator import AssemblyOrchestrator
from operators.cleanup_operator import cleanup_orphaned_chunks
from utils.errors import AdmissionRejected, AssemblyError
from utils.progress_poller import ProgressPoller


load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("assembly-cli")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Media segment assembly")
    sub = parser.add_subparsers(dest="command", required=True)

    chunk = sub.add_parser("chunk", help="Split an audio track into chunks")
    chunk.add_argument("--audio-url", required=True)
    chunk.add_argument("--chunk-seconds", type=float, required=True)
    chunk.add_argument("--total-ms", type=int, required=True)
    chunk.add_argument("--job-id", default=None)

    stitch = sub.add_parser("stitch", help="Concatenate video segments")
    stitch.add_argument(
        "--segments",
        required=True,
        help="Path to a JSON list of segments ({index, url, durationMs, startTimeMs, endTimeMs})",
    )
    stitch.add_argument("--audio-url", default=None)
    stitch.add_argument("--output-key", default=None)
    stitch.add_argument("--job-id", default=None)

    duration = sub.add_parser("duration", help="Probe an audio track's duration")
    duration.add_argument("--audio-url", required=True)

    sub.add_parser("capabilities", help="Report whether the full pipeline can run")

    poll = sub.add_parser("poll", help="Wait for a queued job to finish")
    poll.add_argument("--job-id", required=True)
    poll.add_argument(
        "--kind",
        choices=[k.value for k in AssemblyJobKind],
        default=AssemblyJobKind.STITCH.value,
    )

    cleanup = sub.add_parser("cleanup-orphans", help="Delete stale audio chunks")
    cleanup.add_argument("--older-than-days", type=int, default=7)

    return parser.parse_args(argv)


def load_segments(path: str) -> list[MediaSegmentInput]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return [MediaSegmentInput.model_validate(item) for item in raw]


def _log_progress(stage: ProgressStage, percent: int, message: str) -> None:
    logger.info(f"[{stage.value}] {percent}% {message}")


def run(args, orchestrator: AssemblyOrchestrator | None = None) -> dict:
    if args.command == "poll":
        result = ProgressPoller().poll(
            args.job_id,
            kind=AssemblyJobKind(args.kind),
            on_progress=lambda p: logger.info(f"Progress: {p}%"),
        )
        return result.model_dump(mode="json")

    if args.command == "cleanup-orphans":
        return cleanup_orphaned_chunks(older_than_days=args.older_than_days)

    orchestrator = orchestrator or AssemblyOrchestrator()

    if args.command == "capabilities":
        return {
            "full_pipeline": orchestrator.can_use_full_pipeline(),
            "backend": orchestrator.sessions.backend,
        }

    if args.command == "duration":
        return {"duration_ms": orchestrator.get_audio_duration(args.audio_url)}

    if args.command == "chunk":
        chunks = orchestrator.chunk_audio(
            args.audio_url,
            args.chunk_seconds,
            args.total_ms,
            job_id=args.job_id,
            on_progress=_log_progress,
        )
        return {"chunks": [c.model_dump() for c in chunks]}

    segments = load_segments(args.segments)
    result = orchestrator.stitch_videos(
        segments,
        audio_url=args.audio_url,
        output_key=args.output_key,
        job_id=args.job_id,
        on_progress=_log_progress,
    )
    return result.model_dump(mode="json")


def main(argv=None):
    args = parse_args(argv)

    try:
        output = run(args)
    except AdmissionRejected as e:
        logger.error(f"Rejected: {e}")
        sys.exit(2)
    except AssemblyError as e:
        logger.error(f"Assembly failed: {e}")
        sys.exit(1)

    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
