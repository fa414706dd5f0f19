from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional

from .models import DocumentRecord, ParsedSection, SectionRecord


def section_id_for(index: int) -> str:
    return f"section_{index}"


def normalize_sections(
    document: DocumentRecord,
    parsed_sections: Iterable[ParsedSection],
    *,
    document_type: str,
    tenant_id: str,
    created_at: Optional[datetime] = None,
) -> List[SectionRecord]:
    """
    Attach ownership and provenance to parser output. Numbering is taken from
    the parser as-is; this step never renumbers or validates.
    """
    created_at = created_at or datetime.utcnow()
    return [
        SectionRecord(
            document_key=document.document_key,
            section_index=section.index,
            section_id=section_id_for(section.index),
            heading=section.heading,
            content=section.content,
            document_type=document_type,
            tenant_id=tenant_id,
            size_bytes=document.size_bytes,
            uploaded_by=document.uploaded_by,
            created_at=created_at,
        )
        for section in parsed_sections
    ]
