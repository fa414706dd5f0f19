"""
Failure taxonomy for the ingestion pipeline.

Every error raised out of `IngestionWorker.ingest` derives from
`IngestionError`; the invoking environment (RQ worker, API background task)
owns redelivery and retry.
"""

from __future__ import annotations

from typing import Optional


class IngestionError(Exception):
    def __init__(self, message: str, document_key: Optional[str] = None):
        super().__init__(message)
        self.document_key = document_key


class InvalidEvent(IngestionError):
    pass


class UnsupportedFormat(IngestionError):
    def __init__(self, document_key: str, extension: str):
        super().__init__(f"Unsupported file type '{extension}' for {document_key}", document_key)
        self.extension = extension


class ParseError(IngestionError):
    def __init__(self, document_format, document_key: str, reason: str):
        fmt = getattr(document_format, "value", document_format)
        super().__init__(f"Could not parse {document_key} as {fmt}: {reason}", document_key)
        self.document_format = document_format
        self.reason = reason


class PersistenceError(IngestionError):
    def __init__(self, document_key: str, reason: str):
        super().__init__(f"Failed to persist sections for {document_key}: {reason}", document_key)
        self.reason = reason


class MetadataFetchError(IngestionError):
    def __init__(self, container: str, object_key: str, reason: str):
        document_key = f"{container}/{object_key}"
        super().__init__(f"Storage lookup failed for {document_key}: {reason}", document_key)
        self.container = container
        self.object_key = object_key
        self.reason = reason


class InvalidStatusTransition(IngestionError):
    def __init__(self, document_key: str, current, target):
        cur = getattr(current, "value", current) or "absent"
        tgt = getattr(target, "value", target)
        super().__init__(f"Illegal status transition {cur} -> {tgt} for {document_key}", document_key)
        self.current = current
        self.target = target
