"""Logging setup and per-operation metrics for memobridge."""
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

STATE_DIR = Path.home() / ".memobridge"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send every ``memobridge.*`` logger to a rotating ``memobridge.log``.

    Args:
        log_dir: Directory for the log file (default ``~/.memobridge/logs``).
        level: Level for the package logger and its handlers.
        max_bytes: Size at which the file is rotated.
        backup_count: Rotated files kept.
        console: Also log to stderr.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else STATE_DIR / "logs"
    log_path.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("memobridge")
    package_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers = [
        RotatingFileHandler(
            log_path / "memobridge.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    ]
    has_console = any(
        type(h) is logging.StreamHandler for h in package_logger.handlers
    )
    if console and not has_console:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    package_logger.info(f"Logging to {log_path / 'memobridge.log'}")
    return log_path


@dataclass
class OperationMetrics:
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "avg_duration_ms": round(self.total_duration_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.min_duration_ms, 2) if self.count else 0,
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
        }


class MetricsCollector:
    """Thread-safe timing and error counts keyed by operation name.

    The import pipeline records ``import_database``; each MCP tool records
    its own name. ``main`` writes the snapshot to disk on shutdown.
    """

    def __init__(self, metrics_file: Optional[Union[str, Path]] = None):
        self.metrics_file = Path(metrics_file) if metrics_file else STATE_DIR / "metrics.json"
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            m = self._metrics[operation]
            m.count += 1
            m.total_duration_ms += duration_ms
            m.min_duration_ms = min(m.min_duration_ms, duration_ms)
            m.max_duration_ms = max(m.max_duration_ms, duration_ms)
            if success:
                m.success_count += 1
            else:
                m.error_count += 1
                m.last_error = error
                m.last_error_time = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {op: m.snapshot() for op, m in self._metrics.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across operations, shown by the ``memos_status`` tool."""
        with self._lock:
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                "total_operations": sum(m.count for m in self._metrics.values()),
                "total_errors": sum(m.error_count for m in self._metrics.values()),
                "operations_tracked": sorted(self._metrics),
            }

    def save_metrics(self) -> bool:
        """Write the snapshot as JSON. Returns False if the write failed."""
        snapshot = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": self.get_metrics(),
        }
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            partial = self.metrics_file.with_suffix(".tmp")
            partial.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
            partial.replace(self.metrics_file)
        except OSError as e:
            logger.error(f"Failed to save metrics to {self.metrics_file}: {e}")
            return False
        return True


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time the block and record it under ``operation``.

    Yields a dict the block can fill with result details (``op["inserted"] =
    12``); they are logged at DEBUG together with the duration.
    """
    correlation_id = uuid.uuid4().hex[:8]
    details: Dict[str, Any] = {}
    logger.debug(
        f"[{correlation_id}] {operation} started "
        + " ".join(f"{k}={v}" for k, v in context.items())
    )
    start = time.perf_counter()
    error = None
    try:
        yield details
    except Exception as e:
        error = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_operation(operation, duration_ms, error is None, error)
        logger.debug(
            f"[{correlation_id}] {operation} {'ok' if error is None else 'failed: ' + error} "
            f"in {duration_ms:.2f}ms "
            + " ".join(f"{k}={v}" for k, v in details.items())
        )
