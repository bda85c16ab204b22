"""Logging setup and storage-operation metrics for notevault.

Every protected storage call and every sync pass is recorded under its
operation name: durations, outcomes, attempts spent on retries and the
error codes that ended failed calls. The snapshot persists as JSON in the
notevault home directory.
"""
import logging
import os
import re
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from notevault.exceptions import RepositoryError

logger = logging.getLogger(__name__)

NOTEVAULT_HOME = Path.home() / ".notevault"
DEFAULT_LOG_DIR = NOTEVAULT_HOME / "logs"
DEFAULT_METRICS_FILE = NOTEVAULT_HOME / "metrics.json"
LOG_FILE_NAME = "notevault.log"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

ROOT_LOGGER_NAME = "notevault"

MAX_ERROR_LENGTH = 200

ErrorInfo = Union[BaseException, str, None]


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    console: bool = True,
) -> Path:
    """Send the ``notevault`` logger hierarchy to a rotating log file.

    Configuring the same directory twice does not add a second file
    handler, so the CLI and tests may call this freely.

    Args:
        log_dir: Directory for ``notevault.log``. Defaults to ~/.notevault/logs
        level: Level for the package logger and its new handlers.
        max_bytes: Size at which the log file rotates.
        backup_count: Rotated files kept.
        console: Also log to stderr.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = os.path.abspath(log_path / LOG_FILE_NAME)

    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    new_handlers = []
    if not any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == log_file
        for h in package_logger.handlers
    ):
        new_handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    ):
        new_handlers.append(logging.StreamHandler())

    for handler in new_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.debug(f"Logging to {log_file}")
    return log_path


def _clean_error_text(message: Optional[str], max_length: int = MAX_ERROR_LENGTH) -> Optional[str]:
    """Error text fit for the metrics file: no home path, one line, bounded."""
    if message is None:
        return None
    home = str(Path.home())
    if home and home != "/":
        message = message.replace(home, "~")
    message = re.sub(r"\s+", " ", message).strip()
    if len(message) > max_length:
        message = message[: max_length - 3] + "..."
    return message


def _error_code(error: ErrorInfo) -> str:
    if isinstance(error, RepositoryError):
        return error.code.name
    if isinstance(error, BaseException):
        return type(error).__name__
    return "UNKNOWN_ERROR"


class OperationStats(BaseModel):
    """Accumulated outcomes of one operation name."""

    count: int = 0
    failures: int = 0
    attempts: int = 0
    total_ms: float = 0.0
    min_ms: Optional[float] = None
    max_ms: float = 0.0
    error_codes: Dict[str, int] = Field(default_factory=dict)
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def add(self, duration_ms: float, attempts: int, error: ErrorInfo, failed: bool) -> None:
        self.count += 1
        self.attempts += max(attempts, 1)
        self.total_ms += duration_ms
        self.min_ms = duration_ms if self.min_ms is None else min(self.min_ms, duration_ms)
        self.max_ms = max(self.max_ms, duration_ms)
        if failed:
            self.failures += 1
            code = _error_code(error)
            self.error_codes[code] = self.error_codes.get(code, 0) + 1
            self.last_error = _clean_error_text(str(error) if error is not None else None)
            self.last_error_at = datetime.now(timezone.utc)

    def report(self) -> Dict[str, Any]:
        successes = self.count - self.failures
        return {
            "count": self.count,
            "success_count": successes,
            "error_count": self.failures,
            "success_rate": successes / self.count if self.count else 0,
            "retries": self.attempts - self.count,
            "avg_duration_ms": round(self.total_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.min_ms or 0, 2),
            "max_duration_ms": round(self.max_ms, 2),
            "error_codes": dict(self.error_codes),
            "last_error": self.last_error,
            "last_error_time": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsSnapshot(BaseModel):
    """What the metrics file holds."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    saved_at: Optional[datetime] = None
    operations: Dict[str, OperationStats] = Field(default_factory=dict)


class MetricsCollector:
    """Thread-safe per-operation metrics with JSON persistence.

    Args:
        metrics_file: Where the snapshot is saved. Defaults to ~/.notevault/metrics.json
        auto_save_interval: Save after this many records; 0 saves only on request.
        load_existing: Continue from a previously saved snapshot.
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
        load_existing: bool = True,
    ) -> None:
        self.metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self.auto_save_interval = auto_save_interval
        self._lock = Lock()
        self._unsaved = 0
        self._snapshot = self._load() if load_existing else MetricsSnapshot()

    def _load(self) -> MetricsSnapshot:
        if not self.metrics_file.exists():
            return MetricsSnapshot()
        try:
            snapshot = MetricsSnapshot.model_validate_json(
                self.metrics_file.read_text(encoding="utf-8")
            )
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable metrics file {self.metrics_file}: {e}")
            return MetricsSnapshot()
        logger.debug(f"Loaded metrics from {self.metrics_file}")
        return snapshot

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: ErrorInfo = None,
        attempts: int = 1,
    ) -> None:
        """Record one finished operation.

        ``error`` is the exception (or message) that ended a failed call;
        a ``RepositoryError`` is counted under its error code.
        """
        with self._lock:
            stats = self._snapshot.operations.setdefault(operation, OperationStats())
            stats.add(duration_ms, attempts, error, failed=not success)
            self._unsaved += 1
            if self.auto_save_interval > 0 and self._unsaved >= self.auto_save_interval:
                self._save_locked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: stats.report() for name, stats in self._snapshot.operations.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across every operation."""
        with self._lock:
            operations = self._snapshot.operations.values()
            total = sum(s.count for s in operations)
            errors = sum(s.failures for s in operations)
            codes: Dict[str, int] = {}
            for stats in operations:
                for code, n in stats.error_codes.items():
                    codes[code] = codes.get(code, 0) + n
            return {
                "uptime_seconds": (
                    datetime.now(timezone.utc) - self._snapshot.started_at
                ).total_seconds(),
                "total_operations": total,
                "total_success": total - errors,
                "total_errors": errors,
                "total_retries": sum(s.attempts - s.count for s in operations),
                "overall_success_rate": (total - errors) / total if total else 1.0,
                "error_codes": codes,
                "operations_tracked": list(self._snapshot.operations),
            }

    def reset(self) -> None:
        with self._lock:
            self._snapshot = MetricsSnapshot()
            self._unsaved = 0

    def _save_locked(self) -> bool:
        self._snapshot.saved_at = datetime.now(timezone.utc)
        temp_file = self.metrics_file.with_suffix(".tmp")
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(self._snapshot.model_dump_json(indent=2), encoding="utf-8")
            temp_file.replace(self.metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self.metrics_file}: {e}")
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        """Write the snapshot now. Returns False if the file could not be written."""
        with self._lock:
            return self._save_locked()


# Process-wide collector; the CLI saves it on shutdown
metrics = MetricsCollector(auto_save_interval=0)


@contextmanager
def timed_operation(
    operation: str, collector: Optional[MetricsCollector] = None, **context: Any
) -> Iterator[Dict[str, Any]]:
    """Time a block and record it as ``operation``.

    Yields a dict the block may fill with result details; they are logged
    with the duration when the block ends.
    """
    correlation_id = uuid.uuid4().hex[:8]
    info: Dict[str, Any] = {"correlation_id": correlation_id}
    if context:
        logger.debug(
            f"[{correlation_id}] {operation} started "
            + ", ".join(f"{k}={v}" for k, v in context.items())
        )
    start = time.perf_counter()
    error: Optional[BaseException] = None
    try:
        yield info
    except Exception as e:
        error = e
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        (collector or metrics).record_operation(
            operation, duration_ms, error is None, error
        )
        details = ", ".join(f"{k}={v}" for k, v in info.items() if k != "correlation_id")
        outcome = "ok" if error is None else f"failed ({_error_code(error)})"
        logger.debug(
            f"[{correlation_id}] {operation} {outcome} in {duration_ms:.1f}ms {details}".rstrip()
        )
