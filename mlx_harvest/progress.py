"""Progress events and structured job logs fanned out to subscribers.

Publishing never fails the pipeline: subscriber errors are logged at debug
level and otherwise ignored.
"""

from __future__ import annotations

import contextvars
import datetime as dt
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from .models import JobStatus

logger = logging.getLogger("mlx_harvest.progress")

PACKAGE_LOGGER = "mlx_harvest"

_current_job: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "mlx_harvest_job", default=None
)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    status: JobStatus
    progress: int
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class LogEntry:
    job_id: str
    timestamp: dt.datetime
    level: str
    category: str
    message: str
    details: Optional[Dict[str, Any]] = field(default=None)


ProgressCallback = Callable[[ProgressEvent], None]
LogCallback = Callable[[LogEntry], None]


@contextmanager
def bind_job(job_id: str) -> Iterator[None]:
    """Attribute log records emitted in this context to ``job_id``."""
    token = _current_job.set(job_id)
    try:
        yield
    finally:
        _current_job.reset(token)


class JobLogHandler(logging.Handler):
    """Turns package log records emitted inside a job into LogEntry objects."""

    def __init__(self, reporter: "ProgressReporter") -> None:
        super().__init__(level=logging.INFO)
        self.reporter = reporter

    def emit(self, record: logging.LogRecord) -> None:
        job_id = getattr(record, "job_id", None) or _current_job.get()
        if not job_id:
            return
        try:
            message = record.getMessage()
        except Exception:  # noqa: BLE001 - malformed record arguments
            self.handleError(record)
            return
        entry = LogEntry(
            job_id=job_id,
            timestamp=dt.datetime.fromtimestamp(record.created, tz=dt.timezone.utc),
            level=record.levelname.lower(),
            category=getattr(record, "category", None) or record.name.rsplit(".", 1)[-1],
            message=message,
            details=getattr(record, "details", None),
        )
        self.reporter.publish_log(entry)


class ProgressReporter:
    """Keeps the latest state per job and publishes events to subscribers."""

    def __init__(self) -> None:
        self._latest: Dict[str, ProgressEvent] = {}
        self._subscribers: List[ProgressCallback] = []
        self._log_subscribers: List[LogCallback] = []
        self._handler = JobLogHandler(self)
        self._capture_depth = 0
        self._previous_level = logging.NOTSET

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def subscribe_logs(self, callback: LogCallback) -> Callable[[], None]:
        self._log_subscribers.append(callback)
        return lambda: self._log_subscribers.remove(callback)

    def latest(self, job_id: str) -> Optional[ProgressEvent]:
        return self._latest.get(job_id)

    def report(
        self,
        job_id: str,
        status: JobStatus,
        progress: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = ProgressEvent(job_id, status, progress, dict(metadata) if metadata else None)
        self._latest[job_id] = event
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001 - observers must not break jobs
                logger.debug("Progress subscriber %r failed: %s", callback, exc)

    def publish_log(self, entry: LogEntry) -> None:
        for callback in list(self._log_subscribers):
            try:
                callback(entry)
            except Exception:  # noqa: BLE001 - observers must not break jobs
                pass

    @contextmanager
    def capture_logs(self) -> Iterator[None]:
        """Forward package log records to log subscribers while active.

        The package logger is lowered to INFO only when nothing has enabled a
        more verbose level already; the stream itself carries INFO and above.
        """
        package_logger = logging.getLogger(PACKAGE_LOGGER)
        if self._capture_depth == 0:
            package_logger.addHandler(self._handler)
            self._previous_level = package_logger.level
            if package_logger.getEffectiveLevel() > logging.INFO:
                package_logger.setLevel(logging.INFO)
        self._capture_depth += 1
        try:
            yield
        finally:
            self._capture_depth -= 1
            if self._capture_depth == 0:
                package_logger.removeHandler(self._handler)
                package_logger.setLevel(self._previous_level)
