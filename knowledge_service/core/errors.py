"""Typed failures shared by the job runner, sync engines and pipelines.

Every error carries an ``error_code`` in ``LAYER-AREA-REASON`` form and a
``retryable`` flag; the runner decides between backoff and dead-lettering on
that flag alone.
"""

from __future__ import annotations

import httpx


class KnowledgeServiceError(RuntimeError):
    def __init__(self, message: str, *, error_code: str, retryable: bool) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.retryable = retryable


class JobError(KnowledgeServiceError):
    def __init__(self, message: str, *, error_code: str = "J-HANDLER-FAILED", retryable: bool = True) -> None:
        super().__init__(message, error_code=error_code, retryable=retryable)


class InvalidJobPayloadError(JobError):
    def __init__(self, message: str, *, error_code: str = "400") -> None:
        super().__init__(message, error_code=error_code, retryable=False)


class UnknownJobTypeError(JobError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"No handler registered for job type: {job_type}", error_code="J-HANDLER-UNKNOWN", retryable=False)
        self.job_type = job_type


class ConnectorError(KnowledgeServiceError):
    def __init__(
        self,
        message: str,
        *,
        error_code: str,
        retryable: bool,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, error_code=error_code, retryable=retryable)
        self.status_code = status_code


class PipelineInvariantError(KnowledgeServiceError):
    def __init__(self, message: str, *, error_code: str = "S-SYNC-ZERO-CHUNKS") -> None:
        super().__init__(message, error_code=error_code, retryable=False)


class EmbeddingIndexingError(KnowledgeServiceError):
    def __init__(self, message: str, *, error_code: str = "S-EMB-INDEX-FAILED") -> None:
        super().__init__(message, error_code=error_code, retryable=True)


def connector_error_from_status(status_code: int, message: str) -> ConnectorError:
    # 401/403 usually mean an expired token that the credential layer refreshes.
    if status_code == 429 or status_code >= 500 or status_code in {401, 403}:
        retryable = True
    else:
        retryable = False
    return ConnectorError(message, error_code=f"C-HTTP-{status_code}", retryable=retryable, status_code=status_code)


def connector_error_from_exception(exc: Exception, *, connector: str) -> ConnectorError:
    if isinstance(exc, ConnectorError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return connector_error_from_status(exc.response.status_code, f"{connector}: {exc}")
    if isinstance(exc, httpx.TimeoutException):
        return ConnectorError(f"{connector}: request timed out", error_code="C-HTTP-TIMEOUT", retryable=True)
    if isinstance(exc, httpx.TransportError):
        return ConnectorError(f"{connector}: {exc}", error_code="C-HTTP-TRANSPORT", retryable=True)
    return ConnectorError(f"{connector}: {exc}", error_code="C-UNEXPECTED", retryable=True)


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    return bool(getattr(exc, "retryable", True))


def error_code_of(exc: BaseException, default: str = "J-UNEXPECTED") -> str:
    return str(getattr(exc, "error_code", None) or default)
