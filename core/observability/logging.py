"""
Structured Logging with Correlation IDs

Every log line written inside a job carries the ids of the unit it belongs
to, so a rounding warning or a BLOCK finding can be traced back to the job
run, shard, client and invoice that produced it:
- job_id / job_mode: one batch job run (dry_run or live)
- shard: time-range shard of a sync job
- client_id / invoice_number: the invoice being generated
- stage: pipeline stage (fetch, attribute, markup, rounding, preflight, ...)
- workflow_id / activity_name: Temporal execution, when run under a worker

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(job_id="a1b2c3", client_id="C-100"):
        logger.warning("Rounding residual applied", extra_fields={"residual": "-0.01"})
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional, TextIO


# =============================================================================
# Correlation Context
# =============================================================================

@dataclass
class CorrelationContext:
    """Ids attached to every log line emitted in scope."""
    job_id: Optional[str] = None
    job_mode: Optional[str] = None
    client_id: Optional[str] = None
    shard: Optional[str] = None
    invoice_number: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_run_id: Optional[str] = None
    activity_id: Optional[str] = None
    activity_name: Optional[str] = None
    task_queue: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Set fields only."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        """A copy with ``kwargs`` layered on top; None values are ignored."""
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)

    def path(self) -> str:
        """Short human-readable form: job/mode/shard/client/invoice."""
        parts = [self.job_id, self.job_mode]
        if self.shard:
            parts.append(f"shard:{self.shard}")
        parts.append(self.client_id)
        if self.workflow_id:
            parts.append(self.workflow_id[:12])
        if self.invoice_number:
            parts.append(f"inv:{self.invoice_number}")
        return "/".join(p for p in parts if p) or "-"


# Tasks and threads each see their own copy
_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "billing_correlation_context",
    default=CorrelationContext(),
)


def get_correlation_context() -> CorrelationContext:
    return _correlation_context.get()


def set_correlation_context(ctx: CorrelationContext) -> None:
    _correlation_context.set(ctx)


@contextmanager
def with_correlation(**kwargs):
    """
    Push correlation ids for the duration of the block.

    Nested blocks add to the outer ids; leaving a block restores them.

    Usage:
        with with_correlation(job_id=summary.job_id, job_mode="live"):
            with with_correlation(shard="2024-01-01..2024-01-02"):
                logger.info("Shard synced")
    """
    token = _correlation_context.set(get_correlation_context().merge(**kwargs))
    try:
        yield _correlation_context.get()
    finally:
        _correlation_context.reset(token)


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line: base fields, then correlation ids, then the
    call's ``extra_fields``.

    {"timestamp": "2024-02-01T09:00:00.000000Z", "level": "WARNING",
     "logger": "invoicing.rounding", "message": "Rounding residual applied",
     "job_id": "a1b2c3", "client_id": "C-100", "residual": "-0.01"}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(get_correlation_context().to_dict())
        payload.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Console format:

    2024-02-01 09:00:00 [INFO ] jobs.sync_job [a1b2c3/live/C-100]: Shard synced fetched=3
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
        line = (
            f"{timestamp} [{record.levelname:5}] {record.name} "
            f"[{get_correlation_context().path()}]: {record.getMessage()}"
        )
        extra = getattr(record, "extra_fields", None)
        if extra:
            line += " " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Logger
# =============================================================================

class CorrelatedLogger:
    """
    Thin wrapper over a stdlib logger accepting ``extra_fields={...}`` on
    every call. Correlation ids are added by the formatters.
    """

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, msg: str, args, exc_info=None, extra_fields=None):
        if not self._logger.isEnabledFor(level):
            return
        if exc_info is True:
            exc_info = sys.exc_info()
        record = self._logger.makeRecord(
            self._logger.name, level, "(unknown file)", 0, msg, args, exc_info or None,
        )
        record.extra_fields = extra_fields or {}
        self._logger.handle(record)

    def debug(self, msg: str, *args, extra_fields: Optional[Dict[str, Any]] = None):
        self._log(logging.DEBUG, msg, args, extra_fields=extra_fields)

    def info(self, msg: str, *args, extra_fields: Optional[Dict[str, Any]] = None):
        self._log(logging.INFO, msg, args, extra_fields=extra_fields)

    def warning(self, msg: str, *args, extra_fields: Optional[Dict[str, Any]] = None):
        self._log(logging.WARNING, msg, args, extra_fields=extra_fields)

    def error(self, msg: str, *args, exc_info=None, extra_fields: Optional[Dict[str, Any]] = None):
        self._log(logging.ERROR, msg, args, exc_info=exc_info, extra_fields=extra_fields)

    def exception(self, msg: str, *args, extra_fields: Optional[Dict[str, Any]] = None):
        """Error with the active exception's traceback."""
        self._log(logging.ERROR, msg, args, exc_info=True, extra_fields=extra_fields)

    def setLevel(self, level):
        self._logger.setLevel(level)

    def isEnabledFor(self, level):
        return self._logger.isEnabledFor(level)


# =============================================================================
# Configuration
# =============================================================================

PIPELINE_LOGGERS = (
    "activities", "workflows", "api", "core", "connectors", "jobs",
    "ingestion", "attribution", "markup_engine", "invoicing", "reconciliation",
)

_loggers: Dict[str, CorrelatedLogger] = {}
_handler: Optional[logging.Handler] = None


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = False,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Install the pipeline's root handler.

    Calling again replaces the handler installed by the previous call, so
    scripts can reconfigure after settings are loaded.

    Args:
        level: Level for the root logger and the pipeline packages
        json_format: StructuredFormatter when True, HumanReadableFormatter otherwise
        stream: Defaults to stdout
    """
    global _handler

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)

    _handler = logging.StreamHandler(stream or sys.stdout)
    _handler.setLevel(level)
    _handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())
    root.addHandler(_handler)
    root.setLevel(level)

    for name in PIPELINE_LOGGERS:
        logging.getLogger(name).setLevel(level)

    # Third-party chatter
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("temporalio").setLevel(logging.INFO)

    return _handler


def configure_from_settings(settings) -> None:
    """Configure from a core.config.Settings (LOG_LEVEL, LOG_JSON)."""
    configure_logging(level=getattr(logging, settings.log_level, logging.INFO), json_format=settings.log_json)


def get_logger(name: str) -> CorrelatedLogger:
    """Correlated logger for ``name`` (typically ``__name__``)."""
    if _handler is None:
        configure_logging()
    if name not in _loggers:
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]


# =============================================================================
# Stage and activity log points
# =============================================================================

def log_stage_start(stage: str, **fields):
    get_logger(f"jobs.{stage}").info(f"Stage started: {stage}", extra_fields=fields)


def log_stage_complete(stage: str, duration_ms: Optional[float] = None, **fields):
    extra = {"duration_ms": round(duration_ms, 1)} if duration_ms is not None else {}
    extra.update(fields)
    get_logger(f"jobs.{stage}").info(f"Stage completed: {stage}", extra_fields=extra)


def log_activity_start(activity_name: str, **fields):
    get_logger(f"activities.{activity_name}").info(f"Activity started: {activity_name}", extra_fields=fields)


def log_activity_complete(activity_name: str, **fields):
    get_logger(f"activities.{activity_name}").info(f"Activity completed: {activity_name}", extra_fields=fields)


def log_activity_error(activity_name: str, error: str, **fields):
    get_logger(f"activities.{activity_name}").error(
        f"Activity failed: {activity_name}: {error}", extra_fields=fields,
    )
