"""Observability utilities for the Hathi storage layer.

Provides logging setup with rotation, per-operation timing metrics and
a decorator that wraps adapter operations with correlation-id logging.
"""
import functools
import inspect
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
from typing import Any, Callable, Dict, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

# Type variable for decorators
F = TypeVar("F", bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB per file
    backup_count: int = 5,
    console: bool = True,
) -> Optional[Path]:
    """Configure logging for the ``hathi_store`` logger hierarchy.

    When ``log_dir`` is given, a rotating file handler writes
    ``hathi_store.log`` there; files are rotated at ``max_bytes`` and
    ``backup_count`` old files are kept.

    Args:
        log_dir: Directory for log files. None disables file logging.
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of rotated files to keep (default: 5)
        console: Also log to console (default: True)

    Returns:
        Path to the log directory, or None when only console logging is set up.
    """
    root_logger = logging.getLogger("hathi_store")
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_path: Optional[Path] = None
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / "hathi_store.log"
        if not any(
            isinstance(h, RotatingFileHandler)
            and Path(h.baseFilename) == log_file.resolve()
            for h in root_logger.handlers
        ):
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.info(
        f"Logging configured: dir={log_path}, level={logging.getLevelName(level)}"
    )
    return log_path


@dataclass
class OperationMetrics:
    """Counters for one adapter operation (create_note, rename_context, ...)."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: float = float("inf")
    max_duration_ms: float = 0.0
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "success_rate": self.success_count / self.count if self.count else 0,
            "avg_duration_ms": round(self.total_duration_ms / self.count, 2) if self.count else 0,
            "min_duration_ms": round(self.min_duration_ms, 2) if self.count else 0,
            "max_duration_ms": round(self.max_duration_ms, 2),
            "last_error": self.last_error,
            "last_error_code": self.last_error_code,
            "last_error_time": (
                self.last_error_time.isoformat() if self.last_error_time else None
            ),
        }


class MetricsCollector:
    """Thread-safe per-operation timing and failure counters."""

    def __init__(self):
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        """Record one call of ``operation``."""
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
                m.last_error_code = error_code
                m.last_error_time = datetime.now(timezone.utc)

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's counters, keyed by operation name."""
        with self._lock:
            return {op: m.snapshot() for op, m in self._metrics.items()}

    def reset(self) -> None:
        """Forget all recorded operations."""
        with self._lock:
            self._metrics.clear()


# Global metrics collector instance
metrics = MetricsCollector()

# Arguments of adapter operations echoed in trace log lines
TRACED_ARGUMENTS = ("note_id", "old_name", "new_name", "term", "threshold", "limit")


def _error_code_name(error: Exception) -> Optional[str]:
    code = getattr(error, "code", None)
    return getattr(code, "name", None)


@contextmanager
def timed_operation(operation: str, **context):
    """Time an operation, record it in ``metrics`` and log start/end.

    Args:
        operation: Name of the operation being performed
        **context: Values shown in the START log line

    Yields:
        A dictionary for result info (e.g. result_count) shown in the END line

    Example:
        with timed_operation('filter_notes', limit=20) as op:
            result = do_filter()
            op['result_count'] = result.total_count
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    result_info: Dict[str, Any] = {}

    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    error: Optional[Exception] = None
    try:
        yield result_info
    except Exception as e:
        error = e
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        error_code = _error_code_name(error) if error is not None else None
        metrics.record_operation(
            operation,
            duration_ms,
            error is None,
            str(error) if error is not None else None,
            error_code,
        )

        result_str = ", ".join(f"{k}={v}" for k, v in result_info.items())
        if error is None:
            status = "OK"
        else:
            status = f"ERROR {error_code or type(error).__name__}: {error}"
        logger.debug(
            f"[{correlation_id}] END {operation} "
            f"({duration_ms:.2f}ms) [{status}] {result_str}"
        )


def _trace_context(signature: inspect.Signature, args, kwargs) -> Dict[str, Any]:
    """Pick the loggable arguments of an adapter call, positional or keyword."""
    try:
        arguments = signature.bind_partial(*args, **kwargs).arguments
    except TypeError:
        return {}
    context = {name: arguments[name] for name in TRACED_ARGUMENTS if name in arguments}
    params = arguments.get("params")
    note_id = params.get("id") if isinstance(params, dict) else getattr(params, "id", None)
    if isinstance(note_id, str):
        context["note_id"] = note_id
    if isinstance(arguments.get("ids"), (list, tuple, set)):
        context["id_count"] = len(arguments["ids"])
    return context


def _describe_result(result: Any, op: Dict[str, Any]) -> None:
    if isinstance(result, (list, tuple)):
        op["result_count"] = len(result)
    elif hasattr(result, "total_count"):
        op["result_count"] = result.total_count
    if hasattr(result, "mode"):
        op["mode"] = result.mode


def traced(operation_name: Optional[str] = None) -> Callable[[F], F]:
    """Decorator wrapping an adapter operation in timed_operation.

    Note ids, context names and search bounds are logged whether they
    were passed positionally or by keyword.

    Example:
        @traced('rename_context')
        def rename_context(self, old_name: str, new_name: str) -> RenameOutcome:
            ...
    """
    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with timed_operation(op_name, **_trace_context(signature, args, kwargs)) as op:
                result = func(*args, **kwargs)
                _describe_result(result, op)
                return result

        return wrapper  # type: ignore
    return decorator
