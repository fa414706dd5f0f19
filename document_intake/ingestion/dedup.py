from __future__ import annotations

from typing import Optional

from .models import DocumentRecord, DocumentStatus
from .repository import RecordStore


class DedupGuard:
    """
    Best-effort check against re-processing a document key. This is a point
    read, not a lock: two first-time deliveries of the same key can both pass
    before either writes its status.

    With `allow_retry` (the default) only a completed document counts as
    processed, so documents left in `error` or `processing` are picked up
    again on the next delivery. Without it any existing record is skipped.
    """

    def __init__(self, repository: RecordStore, allow_retry: bool = True):
        self.repo = repository
        self.allow_retry = allow_retry

    def lookup(self, document_key: str) -> Optional[DocumentRecord]:
        return self.repo.get_document(document_key)

    def is_processed(self, document: Optional[DocumentRecord]) -> bool:
        if document is None:
            return False
        if not self.allow_retry:
            return True
        return document.status == DocumentStatus.COMPLETED

    def already_processed(self, document_key: str) -> bool:
        return self.is_processed(self.lookup(document_key))
