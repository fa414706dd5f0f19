from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Body, Depends

from document_intake.ingestion import (
    ArrivalEvent,
    DocumentFormat,
    IngestionError,
    IngestionWorker,
    InvalidEvent,
    MetadataFetchError,
    ParseError,
    PersistenceError,
    UnsupportedFormat,
)

from api.dependencies import get_worker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])


def error_status(exc: IngestionError) -> int:
    if isinstance(exc, InvalidEvent):
        return 400
    if isinstance(exc, UnsupportedFormat):
        return 415
    if isinstance(exc, ParseError):
        return 422
    if isinstance(exc, MetadataFetchError):
        return 502
    if isinstance(exc, PersistenceError):
        return 503
    return 500


def run_ingestion(worker: IngestionWorker, event: ArrivalEvent) -> None:
    logger.info("Running ingestion for %s", event.document_key)
    worker.ingest(event)


@router.post("")
def receive_event(
    background_tasks: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
    wait: bool = False,
    worker: IngestionWorker = Depends(get_worker),
):
    """
    Accept an arrival event. By default ingestion runs after the response is
    sent; `wait=true` runs it inline and reports the outcome. Ingestion errors
    are mapped to HTTP statuses by the app-level handler.
    """
    event = ArrivalEvent.from_dict(payload)
    DocumentFormat.from_key(event.object_key)

    if not wait:
        background_tasks.add_task(run_ingestion, worker, event)
        return {"document_key": event.document_key, "accepted": True}

    result = worker.ingest(event)
    return {
        "document_key": result.document_key,
        "status": result.status,
        "section_count": result.section_count,
        "skipped": result.skipped,
    }
