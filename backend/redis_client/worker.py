import os
import logging
import sys
from pathlib import Path

from rq import Queue, Worker
from rq.job import Job
from rq.worker import SimpleWorker, SpawnWorker

from redis_client import ASSEMBLY_QUEUE_NAME, init_redis, redis_rq


logger = logging.getLogger(__name__)


ROOT_DIR = Path(__file__).resolve().parents[2]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

WORKER_LOGGERS = (
    "redis_client.worker",
    "operators.assembly_operator",
    "operators.fallback_operator",
    "operators.cleanup_operator",
    "utils.sandbox",
    "utils.browser_runtime",
    "utils.local_runtime",
    "utils.storage_uploader",
    "rq.worker",
)


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    logger_level = (level_name or LOG_LEVEL).upper()
    logger_level_value = getattr(logging, logger_level, logging.INFO)
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
    file_handler.setLevel(logger_level_value)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )

    target_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_file_path)
        for handler in target_logger.handlers
    ):
        target_logger.addHandler(file_handler)
    target_logger.setLevel(logger_level_value)


def _configure_worker_logging() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    jobs_log = os.getenv(
        "ASSEMBLY_JOBS_LOG_FILE", "backend/log/assembly_jobs.log"
    ).strip()
    jobs_log_level = os.getenv("ASSEMBLY_JOBS_LOG_LEVEL", "INFO").strip()
    if jobs_log:
        jobs_log_path = Path(jobs_log)
        if not jobs_log_path.is_absolute():
            jobs_log_path = ROOT_DIR / jobs_log_path
        for logger_name in WORKER_LOGGERS:
            _attach_file_handler(logger_name, jobs_log_path, level_name=jobs_log_level)


class LoggingWorker(Worker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingSimpleWorker(SimpleWorker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


class LoggingSpawnWorker(SpawnWorker):
    def handle_exception(self, job: Job, *exc_info) -> None:
        self.log.error("Job failed: %s", job.id, exc_info=exc_info)
        super().handle_exception(job, *exc_info)


def _build_worker() -> Worker:
    queues = [Queue(ASSEMBLY_QUEUE_NAME, connection=redis_rq)]
    override = os.getenv("RQ_WORKER_CLASS", "").strip().lower()
    supports_wait4 = hasattr(os, "wait4")
    supports_fork = supports_wait4 and hasattr(os, "fork")
    supports_spawn = supports_wait4 and hasattr(os, "spawnv")
    if override == "simple":
        return LoggingSimpleWorker(queues, connection=redis_rq)
    if override == "spawn" and supports_spawn:
        return LoggingSpawnWorker(queues, connection=redis_rq)
    if override == "fork" and supports_fork:
        return LoggingWorker(queues, connection=redis_rq)
    if supports_fork:
        return LoggingWorker(queues, connection=redis_rq)
    if supports_spawn:
        return LoggingSpawnWorker(queues, connection=redis_rq)
    return LoggingSimpleWorker(queues, connection=redis_rq)


def main():
    _configure_worker_logging()
    logger.info(
        "rq_worker_start python_executable=%s queue=%s sandbox_backend=%s",
        sys.executable,
        ASSEMBLY_QUEUE_NAME,
        os.getenv("SANDBOX_BACKEND", "browser"),
    )

    init_redis()
    worker = _build_worker()
    worker.work()


if __name__ == "__main__":
    main()
