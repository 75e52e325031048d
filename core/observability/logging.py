"""
Structured logging with sync correlation IDs.

Every record logged inside a sync job carries:
- job_id / job_type: the sync job being executed
- company_id: the tenant company whose credentials are in use
- document_kind / document_id: the DevPos document currently being synced
- worker_id: the worker process running the job, when dispatched by one

The ids live in a ContextVar, so concurrent jobs on one event loop never see
each other's ids. A handler filter copies them onto each record when it is
emitted.

Usage:
    from core.observability.logging import get_logger, with_correlation

    logger = get_logger(__name__)

    with with_correlation(job_id=42, company_id=7):
        logger.info("Fetching documents")  # tagged [c7/job42]
        logger.info("Created bill", extra_fields={"bill_id": "184"})
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Union


@dataclass(frozen=True)
class CorrelationContext:
    """Ids attached to every log record of the current task."""
    job_id: Optional[int] = None
    job_type: Optional[str] = None
    company_id: Optional[int] = None
    document_kind: Optional[str] = None
    document_id: Optional[str] = None
    worker_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Set ids only."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **ids) -> "CorrelationContext":
        """Copy with ``ids`` layered on top; None values keep the current id."""
        return replace(self, **{k: v for k, v in ids.items() if v is not None})


_current: ContextVar[CorrelationContext] = ContextVar("sync_correlation", default=CorrelationContext())


def get_correlation_context() -> CorrelationContext:
    return _current.get()


@contextmanager
def with_correlation(**ids) -> Iterator[CorrelationContext]:
    """Tag log records inside the block with ``ids`` (job_id=..., document_id=...)."""
    token = _current.set(_current.get().merge(**ids))
    try:
        yield _current.get()
    finally:
        _current.reset(token)


class CorrelationFilter(logging.Filter):
    """Stamps the current correlation ids onto each record as ``record.correlation``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation"):
            record.correlation = get_correlation_context().to_dict()
        return True


def _correlation_of(record: logging.LogRecord) -> Dict[str, Any]:
    ids = getattr(record, "correlation", None)
    return ids if ids is not None else get_correlation_context().to_dict()


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log shippers.

    {"timestamp": "2025-01-09T12:00:00.000000Z", "level": "INFO",
     "logger": "sync_engine.executor", "message": "Created bill 184",
     "job_id": 42, "company_id": 7, "document_id": "EIC-1"}
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_correlation_of(record))
        entry.update(getattr(record, "extra_fields", None) or {})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Console format with a short correlation tag.

    2025-01-09 12:00:00 [INFO ] sync_engine.executor [c7/job42/purchase/doc:EIC-1]: Created bill 184
    """

    def format(self, record: logging.LogRecord) -> str:
        ids = _correlation_of(record)
        tag = []
        if "company_id" in ids:
            tag.append(f"c{ids['company_id']}")
        if "job_id" in ids:
            tag.append(f"job{ids['job_id']}")
        if "document_kind" in ids:
            tag.append(str(ids["document_kind"]))
        if "document_id" in ids:
            tag.append(f"doc:{ids['document_id']}")

        created = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        line = f"{created} [{record.levelname:5}] {record.name} [{'/'.join(tag) or '-'}]: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class CorrelatedLogger(logging.LoggerAdapter):
    """Logger accepting per-call structured fields:

        logger.info("Created vendor", extra_fields={"vendor_id": "58"})
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra["extra_fields"] = kwargs.pop("extra_fields", None) or {}
        kwargs["extra"] = extra
        return msg, kwargs


_loggers: Dict[str, CorrelatedLogger] = {}
_configured = False

APP_LOGGERS = ("workers", "sync_engine", "connectors", "jobs", "mapping_store", "core")


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.getenv("LOG_LEVEL") or logging.INFO
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level {level!r}")
        return resolved
    return level


def configure_logging(
    level: Union[int, str, None] = None,
    json_format: Optional[bool] = None,
):
    """
    Install the console handler on the root logger (once per process).

    Args:
        level: Level name or number; defaults to LOG_LEVEL, then INFO
        json_format: JSON output; defaults to LOG_FORMAT=json in the environment
    """
    global _configured

    if _configured:
        return

    level = _resolve_level(level)
    if json_format is None:
        json_format = os.getenv("LOG_FORMAT", "").lower() == "json"

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CorrelationFilter())
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)
    # aiohttp logs every connection at INFO
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> CorrelatedLogger:
    """Correlated logger for ``name`` (usually __name__); configures logging on first use."""
    if name not in _loggers:
        if not _configured:
            configure_logging()
        _loggers[name] = CorrelatedLogger(logging.getLogger(name))
    return _loggers[name]
