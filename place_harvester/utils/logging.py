"""
Logging setup for the harvester.

Application-wide output goes through structlog (JSON lines) on the root
logger. Each harvester area (orchestrator, panel, navigation, capture...)
additionally writes to its own business log under the log directory; those
files rotate at midnight and expire after a week.
"""

import logging
import logging.handlers
import os
import sys
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any

import schedule
import structlog


DEFAULT_LOG_DIR = "logs"
BUSINESS_RETENTION_DAYS = 7

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'

_cleanup_started = False
_cleanup_lock = threading.Lock()


def get_log_dir() -> Path:
    """Directory holding business log files (override with HARVESTER_LOG_DIR)."""
    return Path(os.getenv("HARVESTER_LOG_DIR", DEFAULT_LOG_DIR))


def _daily_file_handler(path: Path, retention_days: int, delay: bool = False) -> logging.Handler:
    """Midnight-rotating file handler; rotated files get a date suffix."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.TimedRotatingFileHandler(
        path,
        when='midnight',
        interval=1,
        backupCount=retention_days,
        encoding='utf-8',
        delay=delay
    )
    handler.suffix = "%Y-%m-%d"
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def _stdout_handler(level: Optional[int] = None) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if level is not None:
        handler.setLevel(level)
    handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    return handler


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    retention_days: int = 7
) -> None:
    """
    Configure structlog and the root logger.

    Args:
        log_level: Root level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional application log file, rotated daily
        retention_days: Rotated files to keep, also the cleanup horizon
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(logging.getLevelName(log_level.upper()))
    root.handlers.clear()
    root.addHandler(_stdout_handler())

    if log_file:
        log_path = Path(log_file)
        root.addHandler(_daily_file_handler(log_path, retention_days))
        _start_log_cleanup_scheduler(log_path.parent, retention_days)


def get_logger(name: str):
    """
    Structured logger for ``name``.

    Returns:
        structlog logger accepting key/value context
    """
    return structlog.get_logger(name)


def get_business_logger(area: str, log_level: str = "INFO") -> logging.Logger:
    """
    Per-area logger writing to ``<log dir>/<area>.log``.

    The file is opened on first write. Errors are echoed to stdout.
    """
    logger = logging.getLogger(f"business.{area}")
    if logger.handlers:
        return logger

    logger.setLevel(logging.getLevelName(log_level.upper()))
    logger.addHandler(_daily_file_handler(get_log_dir() / f"{area}.log",
                                          BUSINESS_RETENTION_DAYS, delay=True))
    logger.addHandler(_stdout_handler(logging.ERROR))
    return logger


def _start_log_cleanup_scheduler(logs_dir: Path, retention_days: int) -> None:
    """Start the daily log cleanup thread (once per process)."""
    global _cleanup_started

    with _cleanup_lock:
        if _cleanup_started:
            return
        _cleanup_started = True

    def cleanup_job():
        try:
            cleanup_old_logs(logs_dir, retention_days)
        except OSError as e:
            logging.getLogger(__name__).warning(f"Log cleanup failed: {e}")

    schedule.every().day.at("02:00").do(cleanup_job)

    def run_scheduler():
        while True:
            schedule.run_pending()
            time.sleep(60)

    scheduler_thread = threading.Thread(target=run_scheduler, name="log_cleanup", daemon=True)
    scheduler_thread.start()


def cleanup_old_logs(logs_dir: Optional[Path] = None, retention_days: int = 7) -> int:
    """
    Remove log files older than the retention period.

    Args:
        logs_dir: Log directory path
        retention_days: Retention period in days

    Returns:
        Number of files removed
    """
    logs_dir = Path(logs_dir) if logs_dir is not None else get_log_dir()

    if not logs_dir.exists():
        return 0

    cleaned_count = 0
    cutoff_date = datetime.now() - timedelta(days=retention_days)

    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
        if file_mtime < cutoff_date:
            log_file.unlink()
            cleaned_count += 1

    if cleaned_count > 0:
        logging.getLogger(__name__).info(f"Removed {cleaned_count} expired log files")

    return cleaned_count


def get_log_statistics(logs_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Summarise log files per area."""
    logs_dir = Path(logs_dir) if logs_dir is not None else get_log_dir()

    stats = {
        "total_files": 0,
        "total_size_mb": 0,
        "files_by_business": {},
    }

    if not logs_dir.exists():
        return stats

    for log_file in logs_dir.glob("*.log*"):
        if not log_file.is_file():
            continue
        size_mb = log_file.stat().st_size / 1024 / 1024
        stats["total_files"] += 1
        stats["total_size_mb"] += size_mb

        business_name = log_file.name.split('.log')[0]
        entry = stats["files_by_business"].setdefault(business_name, {"count": 0, "size_mb": 0})
        entry["count"] += 1
        entry["size_mb"] += size_mb

    stats["total_size_mb"] = round(stats["total_size_mb"], 2)
    return stats
