"""Logging setup and configuration."""

import logging
import os
import shutil
import sys
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from core.logging.context import set_log_context
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_ROTATION_WHEN = "midnight"
DEFAULT_ROTATION_INTERVAL = 1
DEFAULT_BACKUP_COUNT = 7
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Client libraries that log every reconnect attempt at INFO
NOISY_LOGGERS = [
    "aiokafka",
    "aiokafka.conn",
    "aiokafka.consumer.group_coordinator",
    "aiohttp",
    "aiohttp.access",
]


class ArchivingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that moves rotated files to an archive folder.

    Example:
        logs/2026-01-05/avropipe_consumer_0105_1430_happy-tiger.log (current)
        logs/archive/2026-01-05/avropipe_consumer_0105_1430_happy-tiger.log.2026-01-05
    """

    def __init__(
        self,
        filename,
        when="midnight",
        interval=1,
        backupCount=0,
        encoding=None,
        delay=False,
        utc=False,
        archive_dir=None,
    ):
        super().__init__(filename, when, interval, backupCount, encoding, delay, utc)
        if archive_dir:
            self.archive_dir = Path(archive_dir)
        else:
            self.archive_dir = Path(self.baseFilename).parent / "archive"

        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def doRollover(self):
        super().doRollover()

        log_path = Path(self.baseFilename)
        for rotated_file in log_path.parent.glob(f"{log_path.name}.*"):
            if rotated_file == log_path:
                continue

            try:
                shutil.move(str(rotated_file), str(self.archive_dir / rotated_file.name))
            except OSError as e:
                # stderr, not the logger: we are inside a handler
                print(f"Warning: Failed to archive {rotated_file}: {e}", file=sys.stderr)


def get_log_file_path(
    log_dir: Path,
    component: str | None = None,
    worker_id: str | None = None,
) -> Path:
    """
    Build log file path with a date subfolder.

    Structure: {log_dir}/{YYYY-MM-DD}/avropipe_{component}_{MMDD}_{HHMM}_{worker_id}.log

    worker_id keeps concurrent workers of the same component from sharing a file.
    """
    now = datetime.now()
    base_name = f"avropipe_{component}" if component else "avropipe"
    filename = f"{base_name}_{now:%m%d}_{now:%H%M}"
    if worker_id:
        filename = f"{filename}_{worker_id}"

    return log_dir / now.strftime("%Y-%m-%d") / f"{filename}.log"


def setup_logging(
    name: str = "avropipe",
    component: str | None = None,
    log_dir: Path | None = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    rotation_when: str = DEFAULT_ROTATION_WHEN,
    rotation_interval: int = DEFAULT_ROTATION_INTERVAL,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: str | None = None,
    log_to_stdout: bool | None = None,
) -> logging.Logger:
    """
    Configure root logging with a console handler and an archiving rotating file handler.

    Args:
        name: Logger name to return
        component: "producer" or "consumer", added to every log line
        log_dir: Directory for log files (default: ./logs)
        json_format: Use JSON format for file logs (default: True)
        console_level: Console handler level (default: INFO)
        file_level: File handler level (default: DEBUG)
        rotation_when: When to rotate logs - 'midnight', 'H' (hourly), 'M' (minutes)
        rotation_interval: Interval for rotation (default: 1)
        backup_count: Number of backup files to keep (default: 7)
        suppress_noisy: Quiet down aiokafka and aiohttp loggers
        worker_id: Worker identifier for context and the log filename
        log_to_stdout: Send everything to stdout only, no file handler. When None,
            read from the LOG_TO_STDOUT environment variable.

    Returns:
        Configured logger instance
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    if log_to_stdout is None:
        log_to_stdout = os.getenv("LOG_TO_STDOUT", "false").lower() == "true"

    set_log_context(worker_id=worker_id, component=component)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    root_logger.handlers.clear()

    log_file = None
    if log_to_stdout:
        console_handler.setLevel(file_level)
        root_logger.addHandler(console_handler)
    else:
        console_handler.setLevel(console_level)

        log_file = get_log_file_path(log_dir, component=component, worker_id=worker_id)
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if json_format:
            file_formatter = JSONFormatter()
        else:
            file_formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )

        file_handler = ArchivingTimedRotatingFileHandler(
            log_file,
            when=rotation_when,
            interval=rotation_interval,
            backupCount=backup_count,
            encoding="utf-8",
            archive_dir=log_dir / "archive" / log_file.parent.name,
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(file_formatter)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logger = logging.getLogger(name)
    if log_file is None:
        logger.debug("Logging initialized: stdout-only mode")
    else:
        logger.debug("Logging initialized: file=%s, json=%s", log_file, json_format)

    return logger


def log_worker_startup(
    logger: logging.Logger,
    worker_name: str,
    bootstrap_servers: str | None = None,
    topic: str | None = None,
    group_id: str | None = None,
    registry_url: str | None = None,
    extra_config: dict | None = None,
) -> None:
    """
    Log standard worker startup information.

    Bootstrap server and registry mismatches are the most common cause of a
    worker that starts but never receives anything, so they always get logged.
    """
    logger.info("=" * 70)
    logger.info("Starting %s", worker_name)
    logger.info("=" * 70)
    logger.info("Bootstrap servers: %s", bootstrap_servers or "not set")

    if topic:
        logger.info("Topic: %s", topic)
    if group_id:
        logger.info("Consumer group: %s", group_id)
    if registry_url:
        logger.info("Schema registry: %s", JSONFormatter()._sanitize_url(registry_url))

    if extra_config:
        for key, value in extra_config.items():
            logger.info("%s: %s", key, value)

    logger.info("=" * 70)
