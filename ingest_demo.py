"""
Example: store a local file and run the ingestion pipeline on it using
local object storage + SQLite.

Usage:
    python3 ingest_demo.py --file /path/to/report.docx --container uploads --uploaded-by alice
"""

import argparse
import logging
from pathlib import Path

from document_intake.ingestion import (
    ArrivalEvent,
    IngestionError,
    IngestionWorker,
    LocalObjectStorage,
    ParsingEngine,
    SqlAlchemyRecordStore,
    StorageLocation,
    StoragePaths,
)


def setup_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler()],
        force=True,
    )


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", required=True, type=Path, help="Path to the input document")
    parser.add_argument("--key", default=None, help="Object key (defaults to the file name)")
    parser.add_argument("--container", default="uploads", help="Storage container name")
    parser.add_argument("--uploaded-by", default=None, help="Uploader tag stored with the object")
    parser.add_argument("--db", default=Path("./data/document_intake.db"), type=Path, help="SQLite DB path")
    parser.add_argument("--table", default="documents", help="Record table name")
    parser.add_argument("--storage-root", default=Path("./data/objects"), type=Path, help="Object storage root")
    parser.add_argument("--batch-size", default=50, type=int, help="Sections per write batch")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    if not args.file.exists():
        raise FileNotFoundError(f"File not found: {args.file}")

    key = args.key or args.file.name
    storage = LocalObjectStorage(StoragePaths(args.storage_root))
    storage.put_object(args.container, key, args.file.read_bytes(), uploader=args.uploaded_by)

    args.db.parent.mkdir(parents=True, exist_ok=True)
    repo = SqlAlchemyRecordStore(f"sqlite+pysqlite:///{args.db}", table_name=args.table)
    worker = IngestionWorker(
        repository=repo,
        storage=storage,
        engine=ParsingEngine(),
        batch_size=args.batch_size,
    )

    event = ArrivalEvent(StorageLocation(container_name=args.container, object_key=key))
    print(f"Ingesting {event.document_key}")
    try:
        result = worker.ingest(event)
    except IngestionError as exc:
        document = repo.get_document(event.document_key)
        status = document.status.value if document else "absent"
        print(f"Ingestion failed ({type(exc).__name__}): {exc} [status={status}]")
        raise SystemExit(1)

    if result.skipped:
        print(f"Already processed: status={result.status.value}, sections={result.section_count}")
        return
    print(f"Finished with status={result.status.value}, sections={result.section_count}")
    for section in repo.list_sections(event.document_key)[:5]:
        preview = section.content.replace("\n", " ")[:60]
        print(f"  [{section.section_index}] {section.heading}: {preview}")


if __name__ == "__main__":
    main()
