from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from document_intake.ingestion import (
    IngestionWorker,
    LocalObjectStorage,
    ParsingEngine,
    RecordStore,
    SqlAlchemyRecordStore,
    StoragePaths,
    WorkerConfig,
)


@lru_cache(maxsize=1)
def get_config() -> WorkerConfig:
    return WorkerConfig.from_env()


def get_default_container() -> str:
    return os.getenv("STORAGE_CONTAINER", "uploads")


@lru_cache(maxsize=1)
def get_repo() -> RecordStore:
    config = get_config()
    return SqlAlchemyRecordStore(config.database_url, table_name=config.table_name)


@lru_cache(maxsize=1)
def get_storage() -> LocalObjectStorage:
    return LocalObjectStorage(StoragePaths(Path(get_config().storage_root)))


@lru_cache(maxsize=1)
def get_worker() -> IngestionWorker:
    config = get_config()
    return IngestionWorker(
        repository=get_repo(),
        storage=get_storage(),
        engine=ParsingEngine(),
        batch_size=config.batch_size,
        document_type=config.document_type,
        tenant_id=config.tenant_id,
        allow_retry=config.allow_retry,
    )
