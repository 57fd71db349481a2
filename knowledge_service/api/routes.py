import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Request, status

from knowledge_service.api.schemas import (
    DeadLetterJob,
    DeadLetterListResponse,
    EnqueueJobRequest,
    ErrorEnvelope,
    ErrorInfo,
    HealthResponse,
    JobResponse,
    JobRunResponse,
    JobStatusResponse,
    RetrievedChunk,
    RetrieveRequest,
    RetrieveResponse,
)
from knowledge_service.clients.embeddings_client import EmbeddingsClient
from knowledge_service.core.config import settings
from knowledge_service.core.errors import KnowledgeServiceError
from knowledge_service.db.repository import CorpusRepository, RepositoryError
from knowledge_service.db.session import SessionLocal
from knowledge_service.db.sql_repository import SqlCorpusRepository
from knowledge_service.services.embedding_index import EmbeddingIndex
from knowledge_service.services.retrieval import RetrievalFilters, RetrievalPipeline
from knowledge_service.workers.queue import enqueue_job, job_status, list_dead_letter_jobs, retry_dead_letter_job

router = APIRouter()
logger = logging.getLogger(__name__)


@lru_cache
def get_repository() -> SqlCorpusRepository:
    return SqlCorpusRepository(SessionLocal)


@lru_cache
def get_embedding_index() -> EmbeddingIndex:
    repo = get_repository()
    return EmbeddingIndex(
        EmbeddingsClient(settings.EMBEDDINGS_SERVICE_URL, settings.EMBEDDINGS_TIMEOUT_SECONDS, settings.EMBEDDINGS_MODEL_ID),
        active_chunk_loader=repo.list_active_chunks,
    )


def get_retrieval_pipeline(
    repo: CorpusRepository = Depends(get_repository),
    index: EmbeddingIndex = Depends(get_embedding_index),
) -> RetrievalPipeline:
    return RetrievalPipeline(repo, index, settings)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


def _error(code: str, message: str, correlation_id: str, retryable: bool, status_code: int) -> HTTPException:
    envelope = ErrorEnvelope(
        error=ErrorInfo(
            code=code,
            message=message,
            details=None,
            correlation_id=correlation_id,
            retryable=retryable,
            timestamp=datetime.now(timezone.utc),
        )
    )
    return HTTPException(status_code=status_code, detail=envelope.model_dump(mode="json"))


@router.get("/health", response_model=HealthResponse)
@router.get("/v1/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(service=settings.APP_NAME, version=settings.APP_VERSION)


@router.post("/v1/jobs", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
def post_job(payload: EnqueueJobRequest, repo: CorpusRepository = Depends(get_repository)) -> JobResponse:
    job = enqueue_job(
        repo,
        job_type=payload.type,
        user_id=payload.user_id,
        payload=payload.payload,
        workspace_id=payload.workspace_id,
        connector_type=payload.connector_type,
        scope_id=payload.scope_id,
        idempotency_key=payload.idempotency_key,
        priority=payload.priority,
        max_attempts=payload.max_attempts,
        run_at=payload.run_at,
    )
    return JobResponse.model_validate(job)


@router.get("/v1/jobs/dead-letter", response_model=DeadLetterListResponse)
def get_dead_letter_jobs(repo: CorpusRepository = Depends(get_repository)) -> DeadLetterListResponse:
    return DeadLetterListResponse(
        jobs=[
            DeadLetterJob(
                job=JobResponse.model_validate(entry["job"]),
                last_error=entry["last_error"],
                last_error_code=entry["last_error_code"],
                attempts=entry["job"].attempts,
            )
            for entry in list_dead_letter_jobs(repo)
        ]
    )


@router.post("/v1/jobs/{job_id}/retry", response_model=JobResponse)
def post_job_retry(job_id: str, request: Request, repo: CorpusRepository = Depends(get_repository)) -> JobResponse:
    try:
        job = retry_dead_letter_job(repo, job_id)
    except RepositoryError as exc:
        status_code = status.HTTP_404_NOT_FOUND if exc.error_code == "D-JOB-NOT-FOUND" else status.HTTP_409_CONFLICT
        raise _error(exc.error_code, str(exc), _request_id(request), False, status_code) from exc
    logger.info("job_retry_accepted", extra={"job_id": job_id})
    return JobResponse.model_validate(job)


@router.get("/v1/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, request: Request, repo: CorpusRepository = Depends(get_repository)) -> JobStatusResponse:
    found = job_status(repo, job_id)
    if found is None:
        raise _error("D-JOB-NOT-FOUND", "Job not found", _request_id(request), False, status.HTTP_404_NOT_FOUND)
    job, runs = found
    return JobStatusResponse(
        job=JobResponse.model_validate(job),
        runs=[JobRunResponse.model_validate(run) for run in runs],
    )


@router.post("/v1/retrieve", response_model=RetrieveResponse)
def post_retrieve(
    payload: RetrieveRequest,
    request: Request,
    pipeline: RetrievalPipeline = Depends(get_retrieval_pipeline),
) -> RetrieveResponse:
    filters = RetrievalFilters(
        workspace_id=payload.workspace_id,
        requester_user_id=payload.requester_user_id,
        connector_types=payload.connector_types,
        scope_id=payload.scope_id,
    )
    try:
        result = pipeline.retrieve(payload.query, filters, payload.top_k)
    except KnowledgeServiceError as exc:
        raise _error(exc.error_code, exc.message, _request_id(request), exc.retryable, status.HTTP_503_SERVICE_UNAVAILABLE) from exc
    return RetrieveResponse(
        chunks=[
            RetrievedChunk(
                chunk_id=item.chunk.id,
                source_id=item.chunk.source_id,
                source_version_id=item.chunk.source_version_id,
                title=item.source.title if item.source else None,
                url=item.source.url if item.source else None,
                source_type=item.source.type if item.source else None,
                text=item.chunk.text,
                score=item.score,
            )
            for item in result.chunks
        ],
        diagnostics=result.diagnostics.as_dict(),
    )
