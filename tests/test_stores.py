"""Tests for job status stores and image record stores (SQLite and memory)."""

from datetime import timedelta

import pytest

from resize_pipeline.errors import InvalidTransition, QueueUnavailable, RecordNotFound
from resize_pipeline.queue import (
    ImageRecord,
    JobStatus,
    MemoryImageRecordStore,
    MemoryJobStatusStore,
    ResolutionResult,
    SQLiteDatabase,
    SQLiteImageRecordStore,
    SQLiteJobStatusStore,
)


@pytest.fixture
def database(tmp_path):
    db = SQLiteDatabase(str(tmp_path / "stores.db"))
    yield db
    db.close()


@pytest.fixture(params=["sqlite", "memory"])
def status_store(request, database, clock):
    if request.param == "sqlite":
        return SQLiteJobStatusStore(database, ttl_s=100, clock=clock)
    return MemoryJobStatusStore(ttl_s=100, clock=clock)


@pytest.fixture(params=["sqlite", "memory"])
def record_store(request, database, clock):
    if request.param == "sqlite":
        return SQLiteImageRecordStore(database, clock=clock)
    return MemoryImageRecordStore(clock=clock)


def make_record(image_id="img-1") -> ImageRecord:
    return ImageRecord(
        image_id=image_id,
        user_id="user-1",
        original_name="cat.jpg",
        sizes={
            "original": ResolutionResult(
                url="file:///objects/original/user-1/img-1.jpg",
                width=0,
                height=0,
                size_label="1.20MB",
            )
        },
    )


def result(width, height) -> ResolutionResult:
    return ResolutionResult(url=f"u/{width}x{height}", width=width, height=height, size_label="1.00KB")


class TestJobStatusStore:
    def test_unknown_job_is_none(self, status_store):
        assert status_store.get_status("nope") is None
        assert status_store.get_record("nope") is None

    def test_set_and_get(self, status_store, clock):
        status_store.set_status("job-1", JobStatus.PENDING)

        record = status_store.get_record("job-1")
        assert record.status == JobStatus.PENDING
        assert record.expires_at == clock.now + timedelta(seconds=100)

    def test_overwrite_resets_ttl(self, status_store, clock):
        """Test every transition gets a fresh TTL."""
        status_store.set_status("job-1", JobStatus.PENDING)
        clock.advance(90)
        status_store.set_status("job-1", JobStatus.PROCESSING)
        clock.advance(90)

        assert status_store.get_status("job-1") == JobStatus.PROCESSING

    def test_expired_reads_as_not_found(self, status_store, clock):
        status_store.set_status("job-1", JobStatus.COMPLETE)
        clock.advance(101)

        assert status_store.get_status("job-1") is None

    def test_purge_expired(self, status_store, clock):
        status_store.set_status("old", JobStatus.COMPLETE)
        clock.advance(101)
        status_store.set_status("new", JobStatus.PENDING)

        assert status_store.purge_expired() == 1
        assert status_store.purge_expired() == 0
        assert status_store.get_status("new") == JobStatus.PENDING


class TestImageRecordStore:
    def test_create_and_get(self, record_store):
        record_store.create(make_record())

        record = record_store.get("img-1")
        assert record.status == JobStatus.PENDING
        assert record.sizes["original"].width == 0
        assert record_store.get("missing") is None

    def test_duplicate_create_rejected(self, record_store):
        record_store.create(make_record())
        with pytest.raises(ValueError):
            record_store.create(make_record())

    def test_happy_path_transitions(self, record_store, clock):
        """Test pending -> processing -> complete replaces sizes wholesale."""
        record_store.create(make_record())
        record_store.mark_processing("img-1", worker_id="w1")
        assert record_store.get("img-1").started_at == clock.now

        clock.advance(5)
        sizes = {"thumbnail": result(150, 150), "original": result(4000, 3000)}
        record_store.mark_complete("img-1", sizes, worker_id="w1")

        record = record_store.get("img-1")
        assert record.status == JobStatus.COMPLETE
        assert record.sizes == sizes
        assert record.processed_at == clock.now
        assert record.error_message is None

    def test_failed_keeps_sizes_and_sets_message(self, record_store):
        record_store.create(make_record())
        record_store.mark_processing("img-1")
        record_store.mark_failed("img-1", "StorageError: upload refused")

        record = record_store.get("img-1")
        assert record.status == JobStatus.FAILED
        assert record.error_message == "StorageError: upload refused"
        assert set(record.sizes) == {"original"}
        assert record.processed_at is not None

    def test_failed_message_never_empty(self, record_store):
        record_store.create(make_record())
        record_store.mark_processing("img-1")
        record_store.mark_failed("img-1", "")

        assert record_store.get("img-1").error_message

    def test_processing_can_be_reentered(self, record_store, clock):
        """Test redelivery after a crash: processing -> processing."""
        record_store.create(make_record())
        record_store.mark_processing("img-1", worker_id="crashed")
        clock.advance(60)
        record_store.mark_processing("img-1", worker_id="w2")

        assert record_store.get("img-1").started_at == clock.now

    @pytest.mark.parametrize("target", ["complete", "failed"])
    def test_pending_cannot_skip_processing(self, record_store, target):
        record_store.create(make_record())
        with pytest.raises(InvalidTransition):
            if target == "complete":
                record_store.mark_complete("img-1", {})
            else:
                record_store.mark_failed("img-1", "boom")

    def test_terminal_states_are_final(self, record_store):
        record_store.create(make_record())
        record_store.mark_processing("img-1")
        record_store.mark_complete("img-1", {"original": result(1, 1)})

        with pytest.raises(InvalidTransition):
            record_store.mark_processing("img-1")
        with pytest.raises(InvalidTransition):
            record_store.mark_failed("img-1", "late failure")
        assert record_store.get("img-1").status == JobStatus.COMPLETE

    def test_missing_record_raises(self, record_store):
        with pytest.raises(RecordNotFound):
            record_store.mark_processing("ghost")

    def test_transition_log(self, record_store):
        """Test every state change is recorded in order."""
        record_store.create(make_record())
        record_store.mark_processing("img-1", worker_id="w1")
        record_store.mark_failed("img-1", "TransformError: " + "x" * 500, worker_id="w1")

        log = record_store.get_transitions("img-1")
        assert [(t.from_state, t.to_state) for t in log] == [
            (None, JobStatus.PENDING),
            (JobStatus.PENDING, JobStatus.PROCESSING),
            (JobStatus.PROCESSING, JobStatus.FAILED),
        ]
        assert log[1].worker_id == "w1"
        assert len(log[2].error_snippet) == 200

    def test_fail_stale(self, record_store, clock):
        """Test records stuck in processing past the cutoff are failed."""
        record_store.create(make_record("stuck"))
        record_store.create(make_record("fresh"))
        record_store.create(make_record("waiting"))
        record_store.mark_processing("stuck", job_id="job-stuck")
        clock.advance(1000)
        record_store.mark_processing("fresh", job_id="job-fresh")

        failed = record_store.fail_stale(900, "StepTimeout: lost")

        assert [r.image_id for r in failed] == ["stuck"]
        assert failed[0].job_id == "job-stuck"
        assert failed[0].status == JobStatus.FAILED
        assert record_store.get_transitions("stuck")[-1].to_state == JobStatus.FAILED
        assert record_store.get("stuck").status == JobStatus.FAILED
        assert record_store.get("stuck").error_message == "StepTimeout: lost"
        assert record_store.get("fresh").status == JobStatus.PROCESSING
        assert record_store.get("waiting").status == JobStatus.PENDING

    def test_list_records_filter(self, record_store, clock):
        for n in range(3):
            record = make_record(f"img-{n}")
            record.uploaded_at = clock.now + timedelta(seconds=n)
            record_store.create(record)
        record_store.mark_processing("img-1")

        assert [r.image_id for r in record_store.list_records()] == ["img-0", "img-1", "img-2"]
        assert [r.image_id for r in record_store.list_records("processing")] == ["img-1"]
        assert record_store.list_records("complete") == []

    def test_returned_records_are_copies(self, record_store):
        record_store.create(make_record())
        record = record_store.get("img-1")
        record.sizes.clear()

        assert "original" in record_store.get("img-1").sizes

    def test_mark_processing_stamps_job_id(self, record_store):
        record_store.create(make_record())
        record_store.mark_processing("img-1", worker_id="w1", job_id="job-1")

        assert record_store.get("img-1").job_id == "job-1"


class TestSQLiteStoreErrors:
    """A broken database surfaces as QueueUnavailable on reads too."""

    @pytest.fixture
    def closed(self, tmp_path):
        db = SQLiteDatabase(str(tmp_path / "closed.db"))
        db.close()
        return db

    def test_record_reads(self, closed):
        store = SQLiteImageRecordStore(closed)
        with pytest.raises(QueueUnavailable):
            store.get("img-1")
        with pytest.raises(QueueUnavailable):
            store.list_records()
        with pytest.raises(QueueUnavailable):
            store.get_transitions("img-1")
        with pytest.raises(QueueUnavailable):
            store.fail_stale(300, "StepTimeout: lost")

    def test_status_reads(self, closed):
        store = SQLiteJobStatusStore(closed)
        with pytest.raises(QueueUnavailable):
            store.get_status("job-1")
        with pytest.raises(QueueUnavailable):
            store.purge_expired()
