from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from redis import Redis
from rq import Queue, Worker

from .engine import ParsingEngine
from .models import ArrivalEvent
from .repository import SqlAlchemyRecordStore
from .storage import LocalObjectStorage, StoragePaths
from .worker import IngestionWorker


def env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class WorkerConfig:
    database_url: str
    storage_root: str
    table_name: str = "documents"
    batch_size: int = 50
    document_type: str = "Policy"
    tenant_id: str = "default"
    allow_retry: bool = True

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/document_intake.db"),
            storage_root=os.getenv("STORAGE_ROOT", "./data/objects"),
            table_name=os.getenv("RECORD_TABLE_NAME", "documents"),
            batch_size=int(os.getenv("WORKER_BATCH_SIZE", "50")),
            document_type=os.getenv("DOCUMENT_TYPE", "Policy"),
            tenant_id=os.getenv("TENANT_ID", "default"),
            allow_retry=env_flag("DEDUP_ALLOW_RETRY", True),
        )


def build_worker(config: WorkerConfig) -> IngestionWorker:
    return IngestionWorker(
        repository=SqlAlchemyRecordStore(config.database_url, table_name=config.table_name),
        storage=LocalObjectStorage(StoragePaths(Path(config.storage_root))),
        engine=ParsingEngine(),
        batch_size=config.batch_size,
        document_type=config.document_type,
        tenant_id=config.tenant_id,
        allow_retry=config.allow_retry,
    )


def run_ingestion_job(payload: Dict[str, Any], config: WorkerConfig) -> Dict[str, Any]:
    """
    RQ task entrypoint. Creates all required components and ingests one
    arrival event. Failures propagate so RQ records the job as failed.
    """
    event = ArrivalEvent.from_dict(payload)
    result = build_worker(config).ingest(event)
    return {
        "document_key": result.document_key,
        "status": result.status.value,
        "section_count": result.section_count,
        "skipped": result.skipped,
    }


class RQEventQueue:
    """
    Redis-backed delivery of arrival events using RQ. Workers are started by
    calling `work()` in dedicated processes; several may run in parallel.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", queue_name: str = "ingest-events"):
        self.redis = Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)

    @staticmethod
    def job_id_for(event: ArrivalEvent) -> str:
        # RQ job ids are limited to letters, digits, dashes and underscores.
        return f"ingest-{hashlib.sha1(event.document_key.encode('utf-8')).hexdigest()}"

    def enqueue_arrival_event(self, event: ArrivalEvent, config: WorkerConfig):
        """
        Enqueue an ingestion under a job id derived from the document key.
        A duplicate notification reuses the job record but is still pushed
        onto the queue, so it runs again and relies on the dedup guard to skip.
        """
        return self.queue.enqueue(
            run_ingestion_job,
            event.to_dict(),
            config,
            job_id=self.job_id_for(event),
            retry=None,
        )

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)
