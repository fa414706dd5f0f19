from __future__ import annotations

import logging
from typing import List, Optional

from .dedup import DedupGuard
from .engine import ParsingEngine
from .errors import MetadataFetchError, ParseError, PersistenceError
from .models import (
    ArrivalEvent,
    DocumentFormat,
    DocumentRecord,
    DocumentStatus,
    IngestionResult,
    ObjectMetadata,
    SectionRecord,
)
from .normalizer import normalize_sections
from .repository import RecordStore
from .status import StatusTracker
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

UNKNOWN_UPLOADER = "Unknown"


class IngestionWorker:
    """
    Drives one arrival event through format check -> metadata -> dedup ->
    parse -> section persistence -> completion. The worker is stateless between
    events and relies on the record store for document state and on the
    storage adapter for object access.

    Nothing is retried here: every failure is raised to the caller, which owns
    redelivery. Sections written by a failed attempt are left in place; a later
    attempt overwrites them by index and prunes anything past its own range.
    """

    def __init__(
        self,
        repository: RecordStore,
        storage: ObjectStorage,
        engine: ParsingEngine,
        batch_size: int = 50,
        document_type: str = "Policy",
        tenant_id: str = "default",
        allow_retry: bool = True,
    ):
        self.repo = repository
        self.storage = storage
        self.engine = engine
        self.batch_size = max(1, batch_size)
        self.document_type = document_type
        self.tenant_id = tenant_id
        self.tracker = StatusTracker(repository)
        self.dedup = DedupGuard(repository, allow_retry=allow_retry)

    def ingest(self, event: ArrivalEvent) -> IngestionResult:
        key = event.document_key
        container, object_key = event.container, event.object_key
        document_format = DocumentFormat.from_key(object_key)

        metadata = self._fetch_metadata(container, object_key)

        try:
            existing = self.dedup.lookup(key)
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(key, f"dedup lookup failed: {exc}") from exc
        if self.dedup.is_processed(existing):
            logger.warning("Skipping %s: already processed (status=%s)", key, existing.status.value)
            return IngestionResult(
                document_key=key,
                status=existing.status,
                section_count=existing.section_count or 0,
                skipped=True,
            )

        current = existing.status if existing else None
        document = existing or self._new_document(container, key, document_format, metadata)
        try:
            self.tracker.begin(document, current)
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(key, f"could not mark processing: {exc}") from exc

        try:
            content = self.storage.get_content(container, object_key)
        except Exception as exc:  # noqa: BLE001
            self._mark_failed(key, f"content fetch failed: {exc}")
            raise MetadataFetchError(container, object_key, str(exc)) from exc

        try:
            parsed = self.engine.parse(content, document_format, key)
        except ParseError as exc:
            self._mark_failed(key, str(exc))
            raise

        sections = normalize_sections(
            document,
            parsed,
            document_type=self.document_type,
            tenant_id=self.tenant_id,
        )
        try:
            self._persist_sections(key, sections)
        except Exception as exc:  # noqa: BLE001
            self._mark_failed(key, f"section write failed: {exc}")
            raise PersistenceError(key, str(exc)) from exc

        try:
            self.tracker.complete(key, len(sections))
        except Exception as exc:  # noqa: BLE001
            self._mark_failed(key, f"completion write failed: {exc}")
            raise PersistenceError(key, f"could not mark completed: {exc}") from exc

        logger.info("Ingested %s (%s) into %d sections", key, document_format.value, len(sections))
        return IngestionResult(
            document_key=key,
            status=DocumentStatus.COMPLETED,
            section_count=len(sections),
        )

    def _fetch_metadata(self, container: str, object_key: str) -> ObjectMetadata:
        try:
            return self.storage.head_metadata(container, object_key)
        except Exception as exc:  # noqa: BLE001
            raise MetadataFetchError(container, object_key, str(exc)) from exc

    def _new_document(
        self,
        container: str,
        key: str,
        document_format: DocumentFormat,
        metadata: ObjectMetadata,
    ) -> DocumentRecord:
        return DocumentRecord(
            document_key=key,
            container=container,
            format=document_format,
            size_bytes=metadata.size_bytes,
            uploaded_at=metadata.last_modified,
            uploaded_by=metadata.uploader_tag or UNKNOWN_UPLOADER,
        )

    def _persist_sections(self, key: str, sections: List[SectionRecord]) -> None:
        # Commit in batches; completion is only written once every batch is acknowledged.
        for start in range(0, len(sections), self.batch_size):
            batch = sections[start : start + self.batch_size]
            self.repo.upsert_sections(batch)
            logger.debug("Wrote sections %d-%d for %s", batch[0].section_index, batch[-1].section_index, key)
        pruned = self.repo.delete_sections_after(key, len(sections))
        if pruned:
            logger.info("Pruned %d stale sections beyond index %d for %s", pruned, len(sections), key)

    def _mark_failed(self, key: str, reason: str) -> Optional[DocumentStatus]:
        try:
            return self.tracker.fail(key, reason)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark %s as error; relying on redelivery", key)
            return None
