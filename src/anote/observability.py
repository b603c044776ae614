"""Logging and operation metrics for the anote store.

Every process that touches the database (the desktop app and each bridge
run) logs to ``anote.log`` in the configured log directory. Operations are
timed and classified as ok, conflict or error so lock contention and stale
writes show up in the log without a debugger attached.
"""
import functools
import logging
import os
import sys
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar, Union

from anote.exceptions import AnoteError, ErrorCode

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [pid %(process)d] - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"
LOG_FILE_NAME = "anote.log"
LOGGER_ROOT = "anote"

OUTCOME_OK = "ok"
OUTCOME_CONFLICT = "conflict"
OUTCOME_ERROR = "error"

F = TypeVar("F", bound=Callable[..., Any])

_logging_configured = False


def _is_console_handler(handler: logging.Handler) -> bool:
    return isinstance(handler, logging.StreamHandler) and not isinstance(
        handler, logging.FileHandler
    )


def _has_file_handler(target: logging.Logger, log_file: Path) -> bool:
    wanted = os.path.abspath(log_file)
    return any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == wanted
        for h in target.handlers
    )


def configure_logging(
    log_dir: Union[str, Path],
    level: int = logging.INFO,
    max_bytes: int = 2 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = False,
) -> Path:
    """Send ``anote.*`` log records to a rotating file.

    Several processes may append to the same file; each record carries the
    pid. Calling this again with the same directory adds nothing. stdout is
    never used since the bridge reserves it for its response line.

    Args:
        log_dir: Directory for ``anote.log`` (created if missing).
        level: Level for the ``anote`` logger and its handlers.
        max_bytes: Rotation threshold per file.
        backup_count: Rotated files kept.
        console: Also echo records to stderr.

    Returns:
        The log directory.
    """
    global _logging_configured

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    anote_logger = logging.getLogger(LOGGER_ROOT)
    anote_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    new_handlers: List[logging.Handler] = []
    if not _has_file_handler(anote_logger, log_file):
        new_handlers.append(
            RotatingFileHandler(
                log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if console and not any(_is_console_handler(h) for h in anote_logger.handlers):
        new_handlers.append(logging.StreamHandler(sys.stderr))

    for handler in new_handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        anote_logger.addHandler(handler)

    _logging_configured = True
    anote_logger.debug(f"Logging to {log_file} (rotate at {max_bytes} bytes x{backup_count})")
    return log_path


def is_logging_configured() -> bool:
    """Whether configure_logging has run in this process."""
    return _logging_configured


@dataclass
class OperationStats:
    """Running totals for one operation name."""
    calls: int = 0
    ok: int = 0
    conflicts: int = 0
    errors: int = 0
    lock_timeouts: int = 0
    total_ms: float = 0.0
    slowest_ms: float = 0.0
    fastest_ms: Optional[float] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "ok": self.ok,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "lock_timeouts": self.lock_timeouts,
            "avg_ms": round(self.total_ms / self.calls, 2) if self.calls else 0.0,
            "fastest_ms": round(self.fastest_ms or 0.0, 2),
            "slowest_ms": round(self.slowest_ms, 2),
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class MetricsCollector:
    """Per-operation counters shared by all threads of one process.

    A conflict is a normal outcome of an optimistic update and is counted
    apart from errors. Lock timeouts are errors and are also counted on
    their own.
    """

    def __init__(self):
        self._stats: Dict[str, OperationStats] = defaultdict(OperationStats)
        self._lock = Lock()
        self._started = datetime.now(timezone.utc)

    def record(
        self,
        operation: str,
        duration_ms: float,
        outcome: str = OUTCOME_OK,
        error: Optional[str] = None,
        lock_timeout: bool = False,
    ) -> None:
        with self._lock:
            stats = self._stats[operation]
            stats.calls += 1
            stats.total_ms += duration_ms
            stats.slowest_ms = max(stats.slowest_ms, duration_ms)
            if stats.fastest_ms is None or duration_ms < stats.fastest_ms:
                stats.fastest_ms = duration_ms

            if outcome == OUTCOME_CONFLICT:
                stats.conflicts += 1
            elif outcome == OUTCOME_ERROR:
                stats.errors += 1
                stats.last_error = error
                stats.last_error_at = datetime.now(timezone.utc)
                if lock_timeout:
                    stats.lock_timeouts += 1
            else:
                stats.ok += 1

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Copy of the counters keyed by operation name."""
        with self._lock:
            return {name: stats.as_dict() for name, stats in self._stats.items()}

    def get_summary(self) -> Dict[str, Any]:
        """Totals across every operation."""
        with self._lock:
            all_stats = list(self._stats.values())
            calls = sum(s.calls for s in all_stats)
            errors = sum(s.errors for s in all_stats)
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._started).total_seconds(),
                "calls": calls,
                "errors": errors,
                "conflicts": sum(s.conflicts for s in all_stats),
                "lock_timeouts": sum(s.lock_timeouts for s in all_stats),
                "error_rate": errors / calls if calls else 0.0,
                "operations": sorted(self._stats),
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._started = datetime.now(timezone.utc)


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block and record its outcome.

    The yielded dict is logged with the END line. Setting
    ``op["outcome"] = OUTCOME_CONFLICT`` records a rejected stale write.

    Example:
        with timed_operation("bridge_update_note", note_id=note_id) as op:
            result = store.update_note(...)
            if isinstance(result, ConflictResult):
                op["outcome"] = OUTCOME_CONFLICT
    """
    tag = uuid.uuid4().hex[:8]
    info: Dict[str, Any] = {"outcome": OUTCOME_OK}
    started = time.perf_counter()
    if context:
        logger.debug(
            f"[{tag}] START {operation} ({', '.join(f'{k}={v}' for k, v in context.items())})"
        )
    else:
        logger.debug(f"[{tag}] START {operation}")

    error: Optional[BaseException] = None
    try:
        yield info
    except Exception as e:
        error = e
        raise
    finally:
        elapsed_ms = (time.perf_counter() - started) * 1000
        if error is None:
            metrics.record(operation, elapsed_ms, info.get("outcome", OUTCOME_OK))
        else:
            lock_timeout = (
                isinstance(error, AnoteError) and error.code == ErrorCode.LOCK_TIMEOUT
            )
            metrics.record(
                operation, elapsed_ms, OUTCOME_ERROR, str(error), lock_timeout=lock_timeout
            )
            info["outcome"] = OUTCOME_ERROR
        extras = ", ".join(f"{k}={v}" for k, v in info.items() if k != "outcome")
        logger.debug(
            f"[{tag}] END {operation} {info['outcome']} ({elapsed_ms:.2f}ms) {extras}".rstrip()
        )


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Run the decorated store method inside ``timed_operation``.

    Results with ``status == "conflict"`` are recorded as conflicts.
    """
    def decorator(func: F) -> F:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {
                key: kwargs[key] for key in ("note_id", "folder_id") if key in kwargs
            }
            with timed_operation(name, **context) as op:
                result = func(*args, **kwargs)
                if getattr(result, "status", None) == OUTCOME_CONFLICT:
                    op["outcome"] = OUTCOME_CONFLICT
                elif isinstance(result, (list, tuple, dict)):
                    op["results"] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator
