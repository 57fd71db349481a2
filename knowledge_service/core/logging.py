from __future__ import annotations

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from knowledge_service.core.config import settings

_request_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
_job_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("job_id", default=None)
_worker_id_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("worker_id", default=None)


class JsonLineFormatter(jsonlogger.JsonFormatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = super().format(record)
        return json.dumps(json.loads(payload), separators=(",", ":"), ensure_ascii=False, default=str)


class _StructuredContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx.get()
        if getattr(record, "job_id", None) is None:
            record.job_id = _job_id_ctx.get()
        if getattr(record, "worker_id", None) is None:
            record.worker_id = _worker_id_ctx.get()
        if not hasattr(record, "event_type"):
            record.event_type = None
        if not hasattr(record, "service"):
            record.service = settings.APP_NAME
        if not hasattr(record, "env"):
            record.env = settings.APP_ENV
        if not hasattr(record, "version"):
            record.version = settings.APP_VERSION
        if not hasattr(record, "ts"):
            record.ts = datetime.now(timezone.utc).isoformat()
        return True


def set_request_context(*, request_id: str | None = None) -> None:
    _request_id_ctx.set(request_id)


def clear_request_context() -> None:
    set_request_context(request_id=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def set_job_context(*, job_id: str | None = None, worker_id: str | None = None) -> None:
    _job_id_ctx.set(job_id)
    _worker_id_ctx.set(worker_id)


def clear_job_context() -> None:
    set_job_context(job_id=None, worker_id=None)


def get_job_id() -> str | None:
    return _job_id_ctx.get()


def log_event(
    event_type: str,
    *,
    level: int = logging.INFO,
    payload: dict[str, Any] | None = None,
    request_id: str | None = None,
    job_id: str | None = None,
) -> None:
    logger = logging.getLogger("knowledge_service.observability")
    extra = {
        "event_type": event_type,
        "request_id": request_id if request_id is not None else get_request_id(),
        "job_id": job_id if job_id is not None else get_job_id(),
        "worker_id": _worker_id_ctx.get(),
        "ts": datetime.now(timezone.utc).isoformat(),
        "service": settings.APP_NAME,
        "env": settings.APP_ENV,
        "version": settings.APP_VERSION,
    }
    if payload:
        extra.update(payload)
    logger.log(level, event_type, extra=extra)


def configure_logging(level: int = logging.INFO) -> None:
    handler = logging.StreamHandler()
    handler.addFilter(_StructuredContextFilter())
    formatter = JsonLineFormatter(
        "%(ts)s %(levelname)s %(name)s %(service)s %(env)s %(event_type)s %(request_id)s %(job_id)s %(worker_id)s %(version)s %(message)s"
    )
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]
