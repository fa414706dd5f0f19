from __future__ import annotations

import threading
from copy import deepcopy
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.orm import Session, sessionmaker

from .models import DocumentFormat, DocumentRecord, DocumentStatus, SectionRecord


class RecordStore:
    """
    Abstract persistence boundary for ingestion. Document rows are keyed by
    `document_key`, section rows by `(document_key, section_index)`. No
    transaction is assumed across rows.
    """

    # Document operations
    def get_document(self, document_key: str) -> Optional[DocumentRecord]:
        raise NotImplementedError

    def save_document(self, document: DocumentRecord) -> None:
        raise NotImplementedError

    def update_document_status(
        self,
        document_key: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        section_count: Optional[int] = None,
    ) -> None:
        """
        Set the status and overwrite `error_message` (None clears it).
        `section_count` is only written when given.
        """
        raise NotImplementedError

    def list_documents(self, status: Optional[DocumentStatus] = None) -> List[DocumentRecord]:
        raise NotImplementedError

    # Section operations
    def upsert_sections(self, sections: Iterable[SectionRecord]) -> None:
        raise NotImplementedError

    def list_sections(self, document_key: str) -> List[SectionRecord]:
        raise NotImplementedError

    def delete_sections_after(self, document_key: str, last_index: int) -> int:
        raise NotImplementedError


class InMemoryRecordStore(RecordStore):
    """
    Simple in-memory store for local runs and tests. It keeps copies of
    dataclasses to avoid cross-mutation between calls, and a lock so several
    worker threads can share one instance.
    """

    def __init__(self):
        self.documents: Dict[str, DocumentRecord] = {}
        self.sections: Dict[Tuple[str, int], SectionRecord] = {}
        self._lock = threading.Lock()

    def _clone(self, obj):
        return deepcopy(obj)

    def get_document(self, document_key: str) -> Optional[DocumentRecord]:
        with self._lock:
            document = self.documents.get(document_key)
            return self._clone(document) if document else None

    def save_document(self, document: DocumentRecord) -> None:
        with self._lock:
            self.documents[document.document_key] = self._clone(document)

    def update_document_status(
        self,
        document_key: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        section_count: Optional[int] = None,
    ) -> None:
        with self._lock:
            document = self.documents.get(document_key)
            if not document:
                return
            document.status = status
            document.error_message = error_message
            if section_count is not None:
                document.section_count = section_count
            document.updated_at = datetime.utcnow()

    def list_documents(self, status: Optional[DocumentStatus] = None) -> List[DocumentRecord]:
        with self._lock:
            return [
                self._clone(d)
                for d in sorted(self.documents.values(), key=lambda d: d.document_key)
                if status is None or d.status == status
            ]

    def upsert_sections(self, sections: Iterable[SectionRecord]) -> None:
        with self._lock:
            for section in sections:
                self.sections[(section.document_key, section.section_index)] = self._clone(section)

    def list_sections(self, document_key: str) -> List[SectionRecord]:
        with self._lock:
            return [
                self._clone(s)
                for (key, _), s in sorted(self.sections.items())
                if key == document_key
            ]

    def delete_sections_after(self, document_key: str, last_index: int) -> int:
        with self._lock:
            stale = [k for k in self.sections if k[0] == document_key and k[1] > last_index]
            for k in stale:
                del self.sections[k]
            return len(stale)


def build_tables(metadata: MetaData, table_name: str) -> Tuple[Table, Table]:
    documents = Table(
        table_name,
        metadata,
        Column("document_key", String, primary_key=True),
        Column("container", String),
        Column("format", Enum(DocumentFormat)),
        Column("size_bytes", Integer),
        Column("uploaded_at", DateTime),
        Column("uploaded_by", String),
        Column("status", Enum(DocumentStatus)),
        Column("error_message", Text),
        Column("section_count", Integer),
        Column("created_at", DateTime),
        Column("updated_at", DateTime),
    )
    sections = Table(
        f"{table_name}_sections",
        metadata,
        Column("document_key", String, primary_key=True),
        Column("section_index", Integer, primary_key=True),
        Column("section_id", String),
        Column("heading", String),
        Column("content", Text),
        Column("document_type", String),
        Column("tenant_id", String),
        Column("size_bytes", Integer),
        Column("uploaded_by", String),
        Column("created_at", DateTime),
    )
    return documents, sections


class SqlAlchemyRecordStore(RecordStore):
    """
    SQL-backed record store using SQLAlchemy. Works with SQLite/Postgres URLs.
    `table_name` names the document table; sections live in `<table_name>_sections`.
    """

    def __init__(self, database_url: str, table_name: str = "documents"):
        self.engine = create_engine(database_url, future=True)
        self.metadata = MetaData()
        self.documents, self.sections = build_tables(self.metadata, table_name)
        self.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def _session(self) -> Session:
        return self.SessionLocal()

    def _to_document(self, row) -> DocumentRecord:
        return DocumentRecord(
            document_key=row.document_key,
            container=row.container,
            format=row.format,
            size_bytes=int(row.size_bytes or 0),
            uploaded_at=row.uploaded_at,
            uploaded_by=row.uploaded_by,
            status=row.status,
            error_message=row.error_message,
            section_count=row.section_count,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_section(self, row) -> SectionRecord:
        return SectionRecord(
            document_key=row.document_key,
            section_index=row.section_index,
            section_id=row.section_id,
            heading=row.heading,
            content=row.content,
            document_type=row.document_type,
            tenant_id=row.tenant_id,
            size_bytes=int(row.size_bytes or 0),
            uploaded_by=row.uploaded_by,
            created_at=row.created_at,
        )

    # region Document operations
    def get_document(self, document_key: str) -> Optional[DocumentRecord]:
        with self._session() as session:
            stmt = select(self.documents).where(self.documents.c.document_key == document_key)
            row = session.execute(stmt).first()
            return self._to_document(row) if row else None

    def save_document(self, document: DocumentRecord) -> None:
        values = dict(
            container=document.container,
            format=document.format,
            size_bytes=document.size_bytes,
            uploaded_at=document.uploaded_at,
            uploaded_by=document.uploaded_by,
            status=document.status,
            error_message=document.error_message,
            section_count=document.section_count,
            created_at=document.created_at,
            updated_at=document.updated_at,
        )
        with self._session() as session:
            result = session.execute(
                update(self.documents)
                .where(self.documents.c.document_key == document.document_key)
                .values(**values)
            )
            if result.rowcount == 0:
                session.execute(insert(self.documents).values(document_key=document.document_key, **values))
            session.commit()

    def update_document_status(
        self,
        document_key: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        section_count: Optional[int] = None,
    ) -> None:
        values = {"status": status, "error_message": error_message, "updated_at": datetime.utcnow()}
        if section_count is not None:
            values["section_count"] = section_count
        with self._session() as session:
            stmt = update(self.documents).where(self.documents.c.document_key == document_key)
            session.execute(stmt.values(**values))
            session.commit()

    def list_documents(self, status: Optional[DocumentStatus] = None) -> List[DocumentRecord]:
        with self._session() as session:
            stmt = select(self.documents).order_by(self.documents.c.document_key)
            if status is not None:
                stmt = stmt.where(self.documents.c.status == status)
            return [self._to_document(row) for row in session.execute(stmt)]

    # endregion

    # region Section operations
    def upsert_sections(self, sections: Iterable[SectionRecord]) -> None:
        table = self.sections
        with self._session() as session:
            for section in sections:
                values = dict(
                    section_id=section.section_id,
                    heading=section.heading,
                    content=section.content,
                    document_type=section.document_type,
                    tenant_id=section.tenant_id,
                    size_bytes=section.size_bytes,
                    uploaded_by=section.uploaded_by,
                    created_at=section.created_at,
                )
                result = session.execute(
                    update(table)
                    .where(table.c.document_key == section.document_key)
                    .where(table.c.section_index == section.section_index)
                    .values(**values)
                )
                if result.rowcount == 0:
                    session.execute(
                        insert(table).values(
                            document_key=section.document_key,
                            section_index=section.section_index,
                            **values,
                        )
                    )
            session.commit()

    def list_sections(self, document_key: str) -> List[SectionRecord]:
        with self._session() as session:
            stmt = (
                select(self.sections)
                .where(self.sections.c.document_key == document_key)
                .order_by(self.sections.c.section_index)
            )
            return [self._to_section(row) for row in session.execute(stmt)]

    def delete_sections_after(self, document_key: str, last_index: int) -> int:
        with self._session() as session:
            result = session.execute(
                delete(self.sections)
                .where(self.sections.c.document_key == document_key)
                .where(self.sections.c.section_index > last_index)
            )
            session.commit()
            return result.rowcount or 0

    # endregion
