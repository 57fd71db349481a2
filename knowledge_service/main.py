import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse

from knowledge_service.api.routes import get_embedding_index, get_repository, router
from knowledge_service.core.config import settings
from knowledge_service.core.logging import clear_request_context, configure_logging, log_event, set_request_context
from knowledge_service.services.sync import SyncOrchestrator
from knowledge_service.workers.handlers import StaticCredentialProvider, build_handler_registry
from knowledge_service.workers.runner import JobRunner

configure_logging()
app = FastAPI(title="Knowledge Service API", version=settings.APP_VERSION)
app.include_router(router)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    set_request_context(request_id=request_id)
    request.state.request_id = request_id

    status_code = 500
    error_code = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        if status_code >= 400:
            error_code = str(status_code)
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception:
        error_code = "internal_server_error"
        raise
    finally:
        log_event(
            "api.request.completed",
            payload={
                "endpoint": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "duration_ms": int((time.perf_counter() - started) * 1000),
                "error_code": error_code,
            },
        )
        clear_request_context()


@app.exception_handler(HTTPException)
async def contract_error_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and "error" in exc.detail:
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return await http_exception_handler(request, exc)


def build_job_runner() -> JobRunner:
    repo = get_repository()
    orchestrator = SyncOrchestrator(repo, get_embedding_index())
    handlers = build_handler_registry(repo, orchestrator, StaticCredentialProvider(settings.CONNECTOR_ACCESS_TOKENS))
    return JobRunner(repo, handlers, settings=settings)


@app.on_event("startup")
def _startup() -> None:
    if settings.DATABASE_AUTO_CREATE_SCHEMA:
        get_repository().create_schema()
    if settings.JOB_RUNNER_ENABLED:
        runner = build_job_runner()
        runner.start()
        app.state.job_runner = runner
    log_event("startup.completed", payload={"job_runner_enabled": settings.JOB_RUNNER_ENABLED})


@app.on_event("shutdown")
def _shutdown() -> None:
    runner = getattr(app.state, "job_runner", None)
    if runner is not None:
        runner.stop(timeout=settings.JOB_POLL_INTERVAL_SECONDS)
