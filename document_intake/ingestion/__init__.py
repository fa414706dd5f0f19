"""
Ingestion subsystem exports.
"""

from .dedup import DedupGuard
from .engine import (
    DoclingTextExtractor,
    ParsingEngine,
    PypdfTextExtractor,
    TextExtractor,
    parse_csv,
    parse_txt,
    split_text_sections,
)
from .errors import (
    IngestionError,
    InvalidEvent,
    InvalidStatusTransition,
    MetadataFetchError,
    ParseError,
    PersistenceError,
    UnsupportedFormat,
)
from .job_queue import RQEventQueue, WorkerConfig, build_worker, run_ingestion_job
from .models import (
    ArrivalEvent,
    DocumentFormat,
    DocumentRecord,
    DocumentStatus,
    IngestionResult,
    ObjectMetadata,
    ParsedSection,
    SectionRecord,
    StorageLocation,
)
from .normalizer import normalize_sections
from .repository import InMemoryRecordStore, RecordStore, SqlAlchemyRecordStore
from .status import StatusTracker, check_transition
from .storage import LocalObjectStorage, ObjectStorage, StoragePaths
from .worker import IngestionWorker

__all__ = [
    "ArrivalEvent",
    "DedupGuard",
    "DoclingTextExtractor",
    "DocumentFormat",
    "DocumentRecord",
    "DocumentStatus",
    "InMemoryRecordStore",
    "IngestionError",
    "IngestionResult",
    "IngestionWorker",
    "InvalidEvent",
    "InvalidStatusTransition",
    "LocalObjectStorage",
    "MetadataFetchError",
    "ObjectMetadata",
    "ObjectStorage",
    "ParseError",
    "ParsedSection",
    "ParsingEngine",
    "PersistenceError",
    "PypdfTextExtractor",
    "RQEventQueue",
    "RecordStore",
    "SectionRecord",
    "SqlAlchemyRecordStore",
    "StatusTracker",
    "StorageLocation",
    "StoragePaths",
    "TextExtractor",
    "UnsupportedFormat",
    "WorkerConfig",
    "build_worker",
    "check_transition",
    "normalize_sections",
    "parse_csv",
    "parse_txt",
    "run_ingestion_job",
    "split_text_sections",
]
