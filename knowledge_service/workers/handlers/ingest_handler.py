from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from knowledge_service.core.errors import JobError, error_code_of, is_retryable
from knowledge_service.db.entities import Job
from knowledge_service.db.repository import CorpusRepository
from knowledge_service.services.connectors.base import SyncableContent
from knowledge_service.services.sanitize import sanitize_content
from knowledge_service.services.sync import SyncOrchestrator
from knowledge_service.workers.payloads import IngestJobPayload, UploadedFile, parse_payload

LOGGER = logging.getLogger(__name__)

UPLOAD_MAX_CHARS = 100_000


class IngestHandler:
    """Ingests uploaded text files as ``upload`` sources owned by the job's user.

    A file is matched to an existing upload by filename; an unchanged file is
    reported as ``duplicate`` and creates nothing.
    """

    def __init__(self, repo: CorpusRepository, orchestrator: SyncOrchestrator) -> None:
        self.repo = repo
        self.orchestrator = orchestrator

    def _external_id(self, user_id: str, filename: str) -> str:
        for source in self.repo.list_sources_by_user_and_type(user_id, "upload"):
            if source.title == filename:
                return source.external_id
        return f"upload:{user_id}:{filename}"

    def _ingest_file(self, job: Job, workspace_id: str, file: UploadedFile) -> dict[str, Any]:
        sanitized = sanitize_content(file.content, max_length=UPLOAD_MAX_CHARS, source_type="upload")
        outcome = self.orchestrator.ingest_document(
            workspace_id=workspace_id,
            user_id=job.user_id,
            source_type="upload",
            content=SyncableContent(
                external_id=self._external_id(job.user_id, file.filename),
                title=file.filename,
                mime_type=file.mime_type,
                content=sanitized.sanitized,
            ),
            source_metadata={
                "mime_type": file.mime_type,
                "size": file.size,
                "injection_markers_removed": sanitized.markers_removed,
            },
            chunk_metadata={"connector_type": "upload", "filename": file.filename},
        )
        if outcome.status == "empty":
            raise JobError(f"{file.filename} has no indexable text", error_code="S-INGEST-EMPTY", retryable=False)
        result: dict[str, Any] = {
            "file": file.filename,
            "status": "duplicate" if outcome.status == "unchanged" else "success",
            "source_id": outcome.source.id,
            "source_version_id": outcome.version.id if outcome.version else None,
        }
        if outcome.status != "unchanged":
            result["chunks"] = len(outcome.chunks)
        return result

    def __call__(self, job: Job, report_progress: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        payload = parse_payload(IngestJobPayload, job.input)
        workspace_id = payload.workspace_id or job.workspace_id or job.user_id
        stats = {"discovered": len(payload.files), "processed": 0, "skipped": 0, "failed": 0}
        results: list[dict[str, Any]] = []
        failures: list[Exception] = []

        for file in payload.files:
            try:
                result = self._ingest_file(job, workspace_id, file)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error("ingest_file_failed", extra={"job_id": job.id, "upload_filename": file.filename, "error": str(exc)})
                failures.append(exc)
                stats["failed"] += 1
                results.append({"file": file.filename, "status": "failed", "error": str(exc), "error_code": error_code_of(exc)})
            else:
                stats["skipped" if result["status"] == "duplicate" else "processed"] += 1
                results.append(result)
            report_progress(dict(stats))

        LOGGER.info("ingest_job_finished", extra={"job_id": job.id, **stats})
        if failures and len(failures) == len(payload.files):
            raise JobError(
                f"All {len(failures)} files failed: {results[0]['error']}",
                error_code=error_code_of(failures[0], "S-INGEST-FAILED"),
                retryable=any(is_retryable(exc) for exc in failures),
            )
        return {**stats, "results": results}
