"""
repo-atlas — structured run logging.

Purpose
- ``structlog`` is the logging front end; events are rendered into stdlib
  ``logging`` records so one queue-backed pipeline serves both APIs.
- Each run writes JSON lines to ``<log_dir>/<run_id>/atlas.jsonl`` from a
  ``QueueListener`` thread, so emitting never blocks on disk I/O.
- Correlation fields (``run_id``, ``task_id``, ``phase``) are bound through
  ``structlog.contextvars`` and therefore follow asyncio tasks.

Non-functional requirements
- A full queue drops records (and counts them) instead of stalling workers.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

LOG_FILENAME: Final[str] = "atlas.jsonl"
ROOT_LOGGER_NAME: Final[str] = "repo_atlas"

CORRELATION_KEYS: Final[tuple[str, ...]] = ("run_id", "task_id", "phase")

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "correlation"}

_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one run's log records are written."""

    run_id: str
    base_log_dir: Path | str | None = Path(".atlas/logs")
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_to_stdout: bool = False


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Start run logging from an ``[observability]`` config section."""
    section = observability_config or {}
    level = section.get("log_level", "INFO")
    base = log_dir if log_dir is not None else section.get("log_dir")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base if isinstance(base, (str, Path)) else None,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=section.get("log_to_stdout") is True,
        )
    )


def configure_structlog() -> None:
    """Render structlog events as stdlib records (``extra`` keeps the key/value pairs)."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_correlation_context() -> dict[str, str]:
    """Correlation fields bound in the current context."""
    bound = structlog.contextvars.get_contextvars()
    return {key: bound[key] for key in CORRELATION_KEYS if bound.get(key) is not None}


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """
    Bind correlation fields for every record emitted inside the block.

    A ``None`` value hides an outer binding of that key until the block exits.
    """
    for key, value in fields.items():
        if value is not None and not value.strip():
            raise ValueError(f"correlation value for {key!r} must not be empty")
    tokens = structlog.contextvars.bind_contextvars(
        **{key: None if value is None else value.strip() for key, value in fields.items()}
    )
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


class _RunQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, records: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(records)
        self.dropped = 0
        self._dropped_lock = threading.Lock()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Context variables are only visible on the emitting thread.
        record.correlation = get_correlation_context()
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record: header keys, correlation keys, then ``fields``."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "run_id": self._run_id,
        }
        line.update(getattr(record, "correlation", None) or {})
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        }
        for key in CORRELATION_KEYS:
            value = extras.pop(key, None)
            if isinstance(value, str) and value:
                line[key] = value
        if extras:
            line["fields"] = extras
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            line["stack"] = record.stack_info
        return json.dumps(line, sort_keys=True, separators=(",", ":"), default=_json_default)


def _json_default(value: object) -> object:
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


@dataclass(slots=True)
class StructuredLoggingHandle:
    """Live logging pipeline of one run; ``shutdown`` drains and closes it."""

    logger: logging.Logger
    run_id: str
    log_path: Path | None
    _records: queue.Queue[logging.LogRecord]
    _handler: _RunQueueHandler
    _sinks: tuple[logging.Handler, ...]
    _listener: logging.handlers.QueueListener
    _closed: bool = field(default=False, init=False)
    _close_lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    @property
    def dropped_records(self) -> int:
        return self._handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._records.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._handler)
            self._handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """
    Start the logging pipeline of one run, replacing any previous one.

    With ``base_log_dir=None`` there is no file sink; records then go to
    stderr when ``log_to_stdout`` is set and are discarded otherwise.
    """
    global _active

    run_id = config.run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)
    shutdown_logging()

    formatter = JsonLineFormatter(run_id)
    sinks: list[logging.Handler] = []
    log_path: Path | None = None
    if config.base_log_dir is not None:
        log_path = Path(config.base_log_dir) / run_id / LOG_FILENAME
        log_path.parent.mkdir(parents=True, exist_ok=True)
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    if not sinks:
        sinks.append(logging.NullHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    handler = _RunQueueHandler(records)
    handler.setLevel(level)
    listener = logging.handlers.QueueListener(records, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        _records=records,
        _handler=handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    with _lock:
        _active = handle
    return handle


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    target = handle if handle is not None else get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Drain and close ``handle`` (the active pipeline by default)."""
    global _active

    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _lock:
        if _active is target:
            _active = None


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    try:
        return logging.getLevelNamesMapping()[level.strip().upper()]
    except KeyError:
        raise ValueError(f"unsupported logging level {level!r}") from None


atexit.register(shutdown_logging)


__all__ = [
    "CORRELATION_KEYS",
    "JsonLineFormatter",
    "LOG_FILENAME",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
