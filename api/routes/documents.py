from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from document_intake.ingestion import (
    ArrivalEvent,
    DocumentFormat,
    DocumentRecord,
    DocumentStatus,
    IngestionWorker,
    LocalObjectStorage,
    RecordStore,
    StorageLocation,
    UnsupportedFormat,
)

from api.dependencies import get_default_container, get_repo, get_storage, get_worker
from api.routes.events import run_ingestion

router = APIRouter(prefix="/documents", tags=["documents"])


def _document_payload(doc: DocumentRecord) -> dict:
    return {
        "document_key": doc.document_key,
        "container": doc.container,
        "format": doc.format,
        "size_bytes": doc.size_bytes,
        "uploaded_at": doc.uploaded_at,
        "uploaded_by": doc.uploaded_by,
        "status": doc.status,
        "error_message": doc.error_message,
        "section_count": doc.section_count,
    }


@router.get("")
def list_documents(status: Optional[DocumentStatus] = None, repo: RecordStore = Depends(get_repo)):
    return [_document_payload(d) for d in repo.list_documents(status=status)]


@router.post("/upload")
async def upload_document(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    key: Optional[str] = Form(None),
    container: Optional[str] = Form(None),
    uploaded_by: Optional[str] = Form(None),
    storage: LocalObjectStorage = Depends(get_storage),
    worker: IngestionWorker = Depends(get_worker),
):
    object_key = key or file.filename
    if not object_key:
        raise HTTPException(status_code=400, detail="Missing object key or filename")
    try:
        DocumentFormat.from_key(object_key)
    except UnsupportedFormat as exc:
        raise HTTPException(status_code=415, detail=str(exc))

    payload = await file.read()
    container_name = container or get_default_container()
    try:
        storage.put_object(container_name, object_key, payload, uploader=uploaded_by)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    event = ArrivalEvent(StorageLocation(container_name=container_name, object_key=object_key))
    background_tasks.add_task(run_ingestion, worker, event)
    return {"document_key": event.document_key, "container": container_name, "object_key": object_key}


# Registered before the bare key route: document keys may contain slashes.
@router.get("/{document_key:path}/sections")
def list_sections(document_key: str, repo: RecordStore = Depends(get_repo)):
    doc = repo.get_document(document_key)
    if not doc:
        raise HTTPException(status_code=404, detail=f"Document not found: {document_key}")
    if doc.status != DocumentStatus.COMPLETED:
        raise HTTPException(
            status_code=409,
            detail=f"Document {document_key} is {doc.status.value}; sections are not trustworthy yet",
        )
    return {
        "document_key": document_key,
        "sections": [
            {
                "section_index": s.section_index,
                "section_id": s.section_id,
                "heading": s.heading,
                "content": s.content,
                "document_type": s.document_type,
                "tenant_id": s.tenant_id,
                "created_at": s.created_at,
            }
            for s in repo.list_sections(document_key)
        ],
    }


@router.get("/{document_key:path}")
def get_document(document_key: str, repo: RecordStore = Depends(get_repo)):
    doc = repo.get_document(document_key)
    if not doc:
        raise HTTPException(status_code=404, detail=f"Document not found: {document_key}")
    return _document_payload(doc)
