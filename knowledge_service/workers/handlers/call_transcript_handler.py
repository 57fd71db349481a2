from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from knowledge_service.core.errors import InvalidJobPayloadError
from knowledge_service.db.entities import Job
from knowledge_service.services.connectors.base import SyncableContent
from knowledge_service.services.sync import SyncOrchestrator
from knowledge_service.workers.payloads import IngestCallTranscriptPayload, TranscriptTurn, parse_payload

LOGGER = logging.getLogger(__name__)

SPEAKERS = {"user": "User", "assistant": "Assistant"}


def build_transcript(turns: list[TranscriptTurn]) -> str:
    return "\n\n".join(f"{SPEAKERS[turn.role]}: {turn.text}" for turn in turns)


class CallTranscriptHandler:
    """Stores a finished voice call as a ``voice_call`` source keyed by call id."""

    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        self.orchestrator = orchestrator

    def __call__(self, job: Job, report_progress: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        payload = parse_payload(IngestCallTranscriptPayload, job.input)
        transcript = build_transcript(payload.turns)
        if not transcript.strip():
            raise InvalidJobPayloadError(f"Empty transcript for call {payload.call_id}")

        outcome = self.orchestrator.ingest_document(
            workspace_id=payload.workspace_id or job.workspace_id or payload.user_id,
            user_id=payload.user_id,
            source_type="voice_call",
            content=SyncableContent(
                external_id=payload.call_id,
                title=f"Voice Call {payload.caller_number or payload.call_id[:8]}",
                mime_type="text/plain",
                content=transcript,
            ),
            source_metadata={
                "call_id": payload.call_id,
                "caller_number": payload.caller_number,
                "turn_count": len(payload.turns),
            },
            chunk_metadata={"connector_type": "voice_call", "call_id": payload.call_id},
        )
        duplicate = outcome.status == "unchanged"
        stats = {"discovered": 1, "processed": 0 if duplicate else 1, "skipped": 1 if duplicate else 0, "failed": 0}
        report_progress(dict(stats))
        LOGGER.info("call_transcript_ingested", extra={"call_id": payload.call_id, "status": outcome.status})
        return {
            **stats,
            "call_id": payload.call_id,
            "status": "duplicate" if duplicate else "success",
            "source_id": outcome.source.id,
            "chunks": len(outcome.chunks),
        }
