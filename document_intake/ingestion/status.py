"""
Per-document status lifecycle.

    (absent) -> processing -> completed
                    |  ^
                    v  |
                   error

`completed` is terminal. `error -> processing` is the one backward move and
happens when a failed document is re-ingested. `processing -> processing`
covers redelivery after an attempt died without reaching a terminal status.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional

from .errors import InvalidStatusTransition
from .models import DocumentRecord, DocumentStatus
from .repository import RecordStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[Optional[DocumentStatus], FrozenSet[DocumentStatus]] = {
    None: frozenset({DocumentStatus.PROCESSING}),
    DocumentStatus.PROCESSING: frozenset(
        {DocumentStatus.PROCESSING, DocumentStatus.COMPLETED, DocumentStatus.ERROR}
    ),
    DocumentStatus.ERROR: frozenset({DocumentStatus.PROCESSING, DocumentStatus.ERROR}),
    DocumentStatus.COMPLETED: frozenset({DocumentStatus.COMPLETED}),
}


def check_transition(
    document_key: str,
    current: Optional[DocumentStatus],
    target: DocumentStatus,
) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(document_key, current, target)


class StatusTracker:
    """
    Single place where document status is written. Callers pass the status
    they last observed for this attempt (`current`), so validation needs no
    extra read and no state is shared between documents.
    """

    def __init__(self, repository: RecordStore):
        self.repo = repository

    def get_status(self, document_key: str) -> Optional[DocumentStatus]:
        document = self.repo.get_document(document_key)
        return document.status if document else None

    def set_status(
        self,
        document_key: str,
        status: DocumentStatus,
        *,
        current: Optional[DocumentStatus],
        error_message: Optional[str] = None,
        section_count: Optional[int] = None,
    ) -> DocumentStatus:
        check_transition(document_key, current, status)
        self.repo.update_document_status(
            document_key,
            status,
            error_message=error_message,
            section_count=section_count,
        )
        logger.info(
            "Document %s: %s -> %s",
            document_key,
            current.value if current else "absent",
            status.value,
        )
        return status

    def begin(self, document: DocumentRecord, current: Optional[DocumentStatus]) -> DocumentStatus:
        """
        Mark an attempt as started. The first attempt creates the document
        row; retries only flip the status so the captured metadata stays as
        first recorded.
        """
        if current is None:
            check_transition(document.document_key, None, DocumentStatus.PROCESSING)
            document.status = DocumentStatus.PROCESSING
            self.repo.save_document(document)
            logger.info("Document %s: absent -> processing", document.document_key)
            return DocumentStatus.PROCESSING
        return self.set_status(document.document_key, DocumentStatus.PROCESSING, current=current)

    def complete(self, document_key: str, section_count: int) -> DocumentStatus:
        return self.set_status(
            document_key,
            DocumentStatus.COMPLETED,
            current=DocumentStatus.PROCESSING,
            section_count=section_count,
        )

    def fail(self, document_key: str, reason: str) -> DocumentStatus:
        return self.set_status(
            document_key,
            DocumentStatus.ERROR,
            current=DocumentStatus.PROCESSING,
            error_message=reason,
        )
