from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import unquote_plus

from .errors import InvalidEvent, UnsupportedFormat


class DocumentFormat(str, Enum):
    DOCX = "docx"
    PDF = "pdf"
    CSV = "csv"
    TXT = "txt"

    @classmethod
    def from_key(cls, document_key: str) -> "DocumentFormat":
        # Last dot of the final path segment; a dotfile such as ".txt" counts.
        name = document_key.rsplit("/", 1)[-1]
        extension = name.rsplit(".", 1)[1].lower() if "." in name else ""
        try:
            return cls(extension)
        except ValueError:
            raise UnsupportedFormat(document_key, extension) from None


class DocumentStatus(str, Enum):
    # Pending is implicit: no record exists yet.
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class StorageLocation:
    container_name: str
    object_key: str


@dataclass(frozen=True)
class ArrivalEvent:
    storage_location: StorageLocation

    @property
    def document_key(self) -> str:
        # Object keys are only unique within a container.
        return f"{self.storage_location.container_name}/{self.storage_location.object_key}"

    @property
    def object_key(self) -> str:
        return self.storage_location.object_key

    @property
    def container(self) -> str:
        return self.storage_location.container_name

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ArrivalEvent":
        """
        Accepts either the native `{"storageLocation": {...}}` shape or an
        S3-style notification (`{"Records": [{"s3": {...}}]}`); only the first
        record of a notification is used.
        """
        try:
            if "storageLocation" in payload:
                location = payload["storageLocation"]
                container = location["containerName"]
                key = location["objectKey"]
            else:
                s3 = payload["Records"][0]["s3"]
                container = s3["bucket"]["name"]
                key = unquote_plus(s3["object"]["key"])
        except (KeyError, IndexError, TypeError) as exc:
            raise InvalidEvent(f"Malformed arrival event: {exc!r}") from exc
        if not container or not key:
            raise InvalidEvent("Arrival event is missing a container name or object key")
        return cls(StorageLocation(container_name=str(container), object_key=str(key)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storageLocation": {
                "containerName": self.storage_location.container_name,
                "objectKey": self.storage_location.object_key,
            }
        }


@dataclass(frozen=True)
class ObjectMetadata:
    size_bytes: int
    last_modified: datetime
    uploader_tag: Optional[str] = None


@dataclass(frozen=True)
class ParsedSection:
    index: int
    heading: str
    content: str


@dataclass
class DocumentRecord:
    document_key: str
    container: str
    format: DocumentFormat
    size_bytes: int
    uploaded_at: datetime
    uploaded_by: str
    status: DocumentStatus = DocumentStatus.PROCESSING
    error_message: Optional[str] = None
    section_count: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SectionRecord:
    document_key: str
    section_index: int
    section_id: str
    heading: str
    content: str
    document_type: str
    tenant_id: str
    size_bytes: int
    uploaded_by: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class IngestionResult:
    document_key: str
    status: DocumentStatus
    section_count: int = 0
    skipped: bool = False
