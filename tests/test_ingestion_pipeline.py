import json
import threading
from datetime import datetime

import pytest

from document_intake.ingestion import (
    ArrivalEvent,
    DedupGuard,
    DocumentFormat,
    DocumentRecord,
    DocumentStatus,
    InMemoryRecordStore,
    IngestionWorker,
    InvalidEvent,
    InvalidStatusTransition,
    LocalObjectStorage,
    MetadataFetchError,
    ParseError,
    ParsingEngine,
    PersistenceError,
    SectionRecord,
    SqlAlchemyRecordStore,
    StatusTracker,
    StorageLocation,
    StoragePaths,
    TextExtractor,
    UnsupportedFormat,
    check_transition,
    normalize_sections,
    split_text_sections,
)

CONTAINER = "uploads"


class NullExtractor(TextExtractor):
    def extract_text(self, content: bytes) -> str:
        return content.decode("utf-8")


class RecordingStore(InMemoryRecordStore):
    """Counts every write so idempotent paths can assert they wrote nothing."""

    def __init__(self):
        super().__init__()
        self.writes = 0

    def save_document(self, document):
        self.writes += 1
        super().save_document(document)

    def update_document_status(self, *args, **kwargs):
        self.writes += 1
        super().update_document_status(*args, **kwargs)

    def upsert_sections(self, sections):
        self.writes += 1
        super().upsert_sections(sections)

    def delete_sections_after(self, document_key, last_index):
        self.writes += 1
        return super().delete_sections_after(document_key, last_index)


class FlakyStore(InMemoryRecordStore):
    """Fails the Nth section batch once, after earlier batches have landed."""

    def __init__(self, fail_on_batch: int):
        super().__init__()
        self.fail_on_batch = fail_on_batch
        self.batches = 0
        self.failed = False

    def upsert_sections(self, sections):
        self.batches += 1
        if not self.failed and self.batches == self.fail_on_batch:
            self.failed = True
            raise IOError("record store throttled the write")
        super().upsert_sections(sections)


class BarrierStore(InMemoryRecordStore):
    """Holds dedup lookups until both concurrent deliveries have read."""

    def __init__(self, parties: int):
        super().__init__()
        self.barrier = threading.Barrier(parties, timeout=5)

    def get_document(self, document_key):
        document = super().get_document(document_key)
        if self.barrier is not None:
            self.barrier.wait()
        return document


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(StoragePaths(tmp_path / "objects"))


def make_worker(repo, storage, batch_size=50, allow_retry=True):
    engine = ParsingEngine(pdf_extractor=NullExtractor(), docx_extractor=NullExtractor())
    return IngestionWorker(
        repository=repo,
        storage=storage,
        engine=engine,
        batch_size=batch_size,
        document_type="Policy",
        tenant_id="tenant123",
        allow_retry=allow_retry,
    )


def event_for(key, container=CONTAINER):
    return ArrivalEvent(StorageLocation(container_name=container, object_key=key))


def key_for(key, container=CONTAINER):
    return f"{container}/{key}"


def assert_contiguous(sections, expected_count):
    assert [s.section_index for s in sections] == list(range(1, expected_count + 1))


def test_csv_end_to_end(storage):
    repo = InMemoryRecordStore()
    storage.put_object(CONTAINER, "invoice42.csv", b"a,b\n1,2\n3,4\n", uploader="alice")
    worker = make_worker(repo, storage)

    result = worker.ingest(event_for("invoice42.csv"))

    assert result.status == DocumentStatus.COMPLETED
    assert result.section_count == 2 and not result.skipped
    sections = repo.list_sections(key_for("invoice42.csv"))
    assert [(s.section_index, s.heading) for s in sections] == [(1, "Row 1"), (2, "Row 2")]
    assert json.loads(sections[0].content) == {"a": "1", "b": "2"}
    assert json.loads(sections[1].content) == {"a": "3", "b": "4"}
    assert sections[0].section_id == "section_1"
    assert sections[0].tenant_id == "tenant123"
    assert sections[0].document_type == "Policy"
    assert sections[0].uploaded_by == "alice"

    document = repo.get_document(key_for("invoice42.csv"))
    assert document.status == DocumentStatus.COMPLETED
    assert document.format == DocumentFormat.CSV
    assert document.size_bytes == len(b"a,b\n1,2\n3,4\n")
    assert document.section_count == 2
    assert document.error_message is None


def test_text_end_to_end(storage):
    repo = InMemoryRecordStore()
    storage.put_object(CONTAINER, "notes/hello.txt", b"Hello\n\nWorld")
    result = make_worker(repo, storage).ingest(event_for("notes/hello.txt"))

    assert result.status == DocumentStatus.COMPLETED
    sections = repo.list_sections(key_for("notes/hello.txt"))
    assert [(s.section_index, s.heading, s.content) for s in sections] == [
        (1, "Section 1", "Hello"),
        (2, "Section 2", "World"),
    ]
    assert repo.get_document(key_for("notes/hello.txt")).uploaded_by == "Unknown"


def test_sqlalchemy_store_end_to_end(tmp_path, storage):
    repo = SqlAlchemyRecordStore(f"sqlite+pysqlite:///{tmp_path / 'records.db'}", table_name="intake_docs")
    storage.put_object(CONTAINER, "invoice42.csv", b"a,b\n1,2\n3,4\n")
    result = make_worker(repo, storage, batch_size=1).ingest(event_for("invoice42.csv"))

    assert result.status == DocumentStatus.COMPLETED
    document = repo.get_document(key_for("invoice42.csv"))
    assert document.status == DocumentStatus.COMPLETED
    assert document.format == DocumentFormat.CSV
    sections = repo.list_sections(key_for("invoice42.csv"))
    assert_contiguous(sections, 2)
    assert json.loads(sections[1].content) == {"a": "3", "b": "4"}
    completed = repo.list_documents(status=DocumentStatus.COMPLETED)
    assert [d.document_key for d in completed] == [key_for("invoice42.csv")]


def test_sqlalchemy_store_roundtrip(tmp_path):
    repo = SqlAlchemyRecordStore(f"sqlite+pysqlite:///{tmp_path / 'test.db'}")
    document = DocumentRecord(
        document_key="policies/a.txt",
        container=CONTAINER,
        format=DocumentFormat.TXT,
        size_bytes=12,
        uploaded_at=datetime(2024, 1, 2, 3, 4, 5),
        uploaded_by="bob",
    )
    repo.save_document(document)
    fetched = repo.get_document("policies/a.txt")
    assert fetched and fetched.status == DocumentStatus.PROCESSING and fetched.uploaded_by == "bob"

    repo.update_document_status("policies/a.txt", DocumentStatus.ERROR, error_message="boom")
    assert repo.get_document("policies/a.txt").error_message == "boom"
    repo.update_document_status("policies/a.txt", DocumentStatus.COMPLETED, section_count=3)
    fetched = repo.get_document("policies/a.txt")
    assert fetched.status == DocumentStatus.COMPLETED
    assert fetched.error_message is None and fetched.section_count == 3

    records = normalize_sections(
        fetched,
        split_text_sections("x\n\ny\n\nz"),
        document_type="Policy",
        tenant_id="t",
    )
    repo.upsert_sections(records)
    repo.upsert_sections(records[:1])
    assert_contiguous(repo.list_sections("policies/a.txt"), 3)
    assert repo.delete_sections_after("policies/a.txt", 1) == 2
    assert_contiguous(repo.list_sections("policies/a.txt"), 1)
    assert repo.get_document("missing.txt") is None


def test_completed_document_is_not_reprocessed(storage):
    repo = RecordingStore()
    storage.put_object(CONTAINER, "report.txt", b"one\n\ntwo")
    worker = make_worker(repo, storage)
    worker.ingest(event_for("report.txt"))
    before = repo.writes
    sections_before = repo.list_sections(key_for("report.txt"))

    storage.put_object(CONTAINER, "report.txt", b"changed\n\ncontent\n\nentirely")
    result = worker.ingest(event_for("report.txt"))

    assert result.skipped
    assert result.status == DocumentStatus.COMPLETED
    assert result.section_count == 2
    assert repo.writes == before
    assert repo.list_sections(key_for("report.txt")) == sections_before


def test_same_object_key_in_two_containers_are_separate_documents(storage):
    repo = InMemoryRecordStore()
    storage.put_object("tenant-a", "report.txt", b"alpha")
    storage.put_object("tenant-b", "report.txt", b"beta\n\ngamma")
    worker = make_worker(repo, storage)

    first = worker.ingest(event_for("report.txt", container="tenant-a"))
    second = worker.ingest(event_for("report.txt", container="tenant-b"))

    assert not first.skipped and not second.skipped
    assert first.document_key == "tenant-a/report.txt"
    assert second.document_key == "tenant-b/report.txt"
    assert [s.content for s in repo.list_sections("tenant-a/report.txt")] == ["alpha"]
    assert [s.content for s in repo.list_sections("tenant-b/report.txt")] == ["beta", "gamma"]
    assert repo.get_document("tenant-b/report.txt").container == "tenant-b"


def test_unsupported_format_writes_nothing(storage):
    repo = RecordingStore()
    storage.put_object(CONTAINER, "report.xyz", b"whatever")
    with pytest.raises(UnsupportedFormat):
        make_worker(repo, storage).ingest(event_for("report.xyz"))
    assert repo.get_document(key_for("report.xyz")) is None
    assert repo.writes == 0


def test_missing_object_is_metadata_fetch_error(storage):
    repo = RecordingStore()
    with pytest.raises(MetadataFetchError) as excinfo:
        make_worker(repo, storage).ingest(event_for("ghost.txt"))
    assert excinfo.value.document_key == key_for("ghost.txt")
    assert repo.get_document(key_for("ghost.txt")) is None
    assert repo.writes == 0


def test_parse_error_marks_document_error(storage):
    repo = InMemoryRecordStore()
    storage.put_object(CONTAINER, "broken.csv", b"a,b\n1,2,3\n")
    with pytest.raises(ParseError):
        make_worker(repo, storage).ingest(event_for("broken.csv"))

    document = repo.get_document(key_for("broken.csv"))
    assert document.status == DocumentStatus.ERROR
    assert "broken.csv" in document.error_message
    assert repo.list_sections(key_for("broken.csv")) == []


def test_persistence_failure_then_retry_yields_contiguous_sections(storage):
    content = b"p1\n\np2\n\np3\n\np4\n\np5"
    storage.put_object(CONTAINER, "long.txt", content)
    repo = FlakyStore(fail_on_batch=2)
    worker = make_worker(repo, storage, batch_size=2)

    with pytest.raises(PersistenceError):
        worker.ingest(event_for("long.txt"))
    assert repo.get_document(key_for("long.txt")).status == DocumentStatus.ERROR
    # Partial writes are left in place.
    assert_contiguous(repo.list_sections(key_for("long.txt")), 2)

    result = worker.ingest(event_for("long.txt"))
    assert result.status == DocumentStatus.COMPLETED and not result.skipped

    fresh = InMemoryRecordStore()
    make_worker(fresh, storage, batch_size=2).ingest(event_for("long.txt"))

    retried = repo.list_sections(key_for("long.txt"))
    assert_contiguous(retried, 5)
    assert [(s.heading, s.content) for s in retried] == [
        (s.heading, s.content) for s in fresh.list_sections(key_for("long.txt"))
    ]
    document = repo.get_document(key_for("long.txt"))
    assert document.status == DocumentStatus.COMPLETED
    assert document.error_message is None


def test_stale_sections_beyond_new_range_are_pruned(storage):
    repo = InMemoryRecordStore()
    storage.put_object(CONTAINER, "short.txt", b"a\n\nb")
    document = DocumentRecord(
        document_key=key_for("short.txt"),
        container=CONTAINER,
        format=DocumentFormat.TXT,
        size_bytes=4,
        uploaded_at=datetime.utcnow(),
        uploaded_by="Unknown",
        status=DocumentStatus.ERROR,
    )
    repo.save_document(document)
    repo.upsert_sections(
        normalize_sections(document, split_text_sections("1\n\n2\n\n3\n\n4"), document_type="Policy", tenant_id="t")
    )

    make_worker(repo, storage).ingest(event_for("short.txt"))

    sections = repo.list_sections(key_for("short.txt"))
    assert_contiguous(sections, 2)
    assert [s.content for s in sections] == ["a", "b"]


def test_document_stuck_in_processing_is_retried(storage):
    repo = InMemoryRecordStore()
    storage.put_object(CONTAINER, "stuck.txt", b"only")
    repo.save_document(
        DocumentRecord(
            document_key=key_for("stuck.txt"),
            container=CONTAINER,
            format=DocumentFormat.TXT,
            size_bytes=4,
            uploaded_at=datetime(2024, 5, 1),
            uploaded_by="carol",
            status=DocumentStatus.PROCESSING,
        )
    )
    result = make_worker(repo, storage).ingest(event_for("stuck.txt"))
    assert result.status == DocumentStatus.COMPLETED
    document = repo.get_document(key_for("stuck.txt"))
    # Metadata captured by the first attempt is kept.
    assert document.uploaded_by == "carol"
    assert document.uploaded_at == datetime(2024, 5, 1)


def test_strict_dedup_skips_any_existing_record(storage):
    repo = InMemoryRecordStore()
    storage.put_object(CONTAINER, "failed.csv", b"a,b\n1,2,3\n")
    worker = make_worker(repo, storage, allow_retry=False)
    with pytest.raises(ParseError):
        worker.ingest(event_for("failed.csv"))

    storage.put_object(CONTAINER, "failed.csv", b"a,b\n1,2\n")
    result = worker.ingest(event_for("failed.csv"))
    assert result.skipped
    assert result.status == DocumentStatus.ERROR
    assert repo.list_sections(key_for("failed.csv")) == []


def test_concurrent_first_deliveries_both_complete(storage):
    repo = BarrierStore(parties=2)
    storage.put_object(CONTAINER, "race.txt", b"one\n\ntwo\n\nthree")
    results, errors = [], []

    def deliver():
        try:
            results.append(make_worker(repo, storage, batch_size=1).ingest(event_for("race.txt")))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=deliver) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    repo.barrier = None

    assert errors == []
    assert len(results) == 2
    assert all(r.status == DocumentStatus.COMPLETED and not r.skipped for r in results)
    assert repo.get_document(key_for("race.txt")).status == DocumentStatus.COMPLETED
    assert_contiguous(repo.list_sections(key_for("race.txt")), 3)


def test_failed_error_write_still_propagates_original_error(storage, caplog):
    class NoErrorWrites(InMemoryRecordStore):
        def update_document_status(self, document_key, status, error_message=None, section_count=None):
            if status == DocumentStatus.ERROR:
                raise IOError("status table unavailable")
            super().update_document_status(document_key, status, error_message, section_count)

    repo = NoErrorWrites()
    storage.put_object(CONTAINER, "bad.txt", b"\xff\xfe")
    with pytest.raises(ParseError):
        make_worker(repo, storage).ingest(event_for("bad.txt"))
    assert repo.get_document(key_for("bad.txt")).status == DocumentStatus.PROCESSING
    assert "Could not mark uploads/bad.txt as error" in caplog.text


def test_status_transitions():
    check_transition("k", None, DocumentStatus.PROCESSING)
    check_transition("k", DocumentStatus.PROCESSING, DocumentStatus.COMPLETED)
    check_transition("k", DocumentStatus.PROCESSING, DocumentStatus.ERROR)
    check_transition("k", DocumentStatus.ERROR, DocumentStatus.PROCESSING)
    for current, target in [
        (None, DocumentStatus.COMPLETED),
        (None, DocumentStatus.ERROR),
        (DocumentStatus.COMPLETED, DocumentStatus.PROCESSING),
        (DocumentStatus.COMPLETED, DocumentStatus.ERROR),
        (DocumentStatus.ERROR, DocumentStatus.COMPLETED),
    ]:
        with pytest.raises(InvalidStatusTransition):
            check_transition("k", current, target)


def test_status_tracker_and_dedup_guard():
    repo = InMemoryRecordStore()
    tracker = StatusTracker(repo)
    guard = DedupGuard(repo)
    document = DocumentRecord(
        document_key="doc.pdf",
        container=CONTAINER,
        format=DocumentFormat.PDF,
        size_bytes=10,
        uploaded_at=datetime.utcnow(),
        uploaded_by="dave",
    )
    assert tracker.get_status("doc.pdf") is None
    assert not guard.already_processed("doc.pdf")

    tracker.begin(document, None)
    assert tracker.get_status("doc.pdf") == DocumentStatus.PROCESSING
    assert not guard.already_processed("doc.pdf")
    assert DedupGuard(repo, allow_retry=False).already_processed("doc.pdf")

    tracker.fail("doc.pdf", "bad bytes")
    assert tracker.get_status("doc.pdf") == DocumentStatus.ERROR
    tracker.begin(repo.get_document("doc.pdf"), DocumentStatus.ERROR)
    tracker.complete("doc.pdf", section_count=4)
    assert tracker.get_status("doc.pdf") == DocumentStatus.COMPLETED
    assert guard.already_processed("doc.pdf")
    assert repo.get_document("doc.pdf").section_count == 4

    with pytest.raises(InvalidStatusTransition):
        tracker.set_status("doc.pdf", DocumentStatus.PROCESSING, current=DocumentStatus.COMPLETED)


def test_arrival_event_shapes():
    native = ArrivalEvent.from_dict({"storageLocation": {"containerName": "b", "objectKey": "x/y.pdf"}})
    assert native.container == "b" and native.object_key == "x/y.pdf"
    assert native.document_key == "b/x/y.pdf"
    assert ArrivalEvent.from_dict(native.to_dict()) == native

    s3 = ArrivalEvent.from_dict(
        {"Records": [{"s3": {"bucket": {"name": "b"}, "object": {"key": "my+file%2C1.txt"}}}]}
    )
    assert s3.object_key == "my file,1.txt"

    for bad in [{}, {"Records": []}, {"storageLocation": {"containerName": "b"}}]:
        with pytest.raises(InvalidEvent):
            ArrivalEvent.from_dict(bad)


def test_normalizer_keeps_parser_numbering():
    document = DocumentRecord(
        document_key="k.txt",
        container=CONTAINER,
        format=DocumentFormat.TXT,
        size_bytes=99,
        uploaded_at=datetime.utcnow(),
        uploaded_by="erin",
    )
    created = datetime(2024, 1, 1)
    records = normalize_sections(
        document,
        split_text_sections("a\n\nb"),
        document_type="Policy",
        tenant_id="tenant123",
        created_at=created,
    )
    assert records[1] == SectionRecord(
        document_key="k.txt",
        section_index=2,
        section_id="section_2",
        heading="Section 2",
        content="b",
        document_type="Policy",
        tenant_id="tenant123",
        size_bytes=99,
        uploaded_by="erin",
        created_at=created,
    )
