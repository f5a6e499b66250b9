"""In-process implementations of the queue and stores.

Thread-safe (one lock per store, never held across I/O), so a single instance
can be shared by every worker thread of a pool. Nothing survives the process;
used for tests and single-process development runs.
"""

import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import InvalidTransition, RecordNotFound
from .backends import ImageRecordStore, JobQueue, JobStatusStore
from .models import (
    ImageRecord,
    Job,
    JobStatus,
    JobStatusRecord,
    ResolutionResult,
    StateTransition,
    can_transition,
    utcnow,
)


class MemoryJobQueue(JobQueue):
    """FIFO queue with claim/ack and a visibility timeout."""

    def __init__(self, visibility_timeout_s: int = 300, clock: Callable[[], datetime] = utcnow):
        self.visibility_timeout_s = visibility_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: "OrderedDict[str, Job]" = OrderedDict()
        self._claimed: Dict[str, Tuple[Job, datetime]] = {}

    def enqueue(self, job: Job) -> str:
        with self._lock:
            if job.job_id not in self._pending and job.job_id not in self._claimed:
                self._pending[job.job_id] = job
        return job.job_id

    def dequeue(self, worker_id: str) -> Optional[Job]:
        with self._lock:
            if not self._pending:
                return None
            _, job = self._pending.popitem(last=False)
            deadline = self._clock() + timedelta(seconds=self.visibility_timeout_s)
            self._claimed[job.job_id] = (job, deadline)
            return job

    def ack(self, job: Job) -> None:
        with self._lock:
            self._claimed.pop(job.job_id, None)
            self._pending.pop(job.job_id, None)

    def requeue_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [job_id for job_id, (_, deadline) in self._claimed.items() if deadline < now]
            for job_id in expired:
                job, _ = self._claimed.pop(job_id)
                self._pending[job_id] = job
                self._pending.move_to_end(job_id, last=False)
        return len(expired)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"pending": len(self._pending), "in_flight": len(self._claimed)}

    def ping(self) -> None:
        return None


class MemoryJobStatusStore(JobStatusStore):
    def __init__(self, ttl_s: int = 86400, clock: Callable[[], datetime] = utcnow):
        self.ttl_s = ttl_s
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, JobStatusRecord] = {}

    def set_status(self, job_id: str, status: JobStatus) -> None:
        record = JobStatusRecord(
            job_id=job_id,
            status=JobStatus(status),
            expires_at=self._clock() + timedelta(seconds=self.ttl_s),
        )
        with self._lock:
            self._records[job_id] = record

    def get_record(self, job_id: str) -> Optional[JobStatusRecord]:
        with self._lock:
            record = self._records.get(job_id)
        if record is None or record.expires_at <= self._clock():
            return None
        return record

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [job_id for job_id, r in self._records.items() if r.expires_at <= now]
            for job_id in expired:
                del self._records[job_id]
        return len(expired)


class MemoryImageRecordStore(ImageRecordStore):
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, ImageRecord] = {}
        self._transitions: Dict[str, List[StateTransition]] = {}

    def create(self, record: ImageRecord) -> None:
        with self._lock:
            if record.image_id in self._records:
                raise ValueError(f"Image record already exists: {record.image_id}")
            self._records[record.image_id] = record.model_copy(deep=True)
            self._log_transition(record.image_id, None, JobStatus(record.status))

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with self._lock:
            record = self._records.get(image_id)
            return record.model_copy(deep=True) if record else None

    def mark_processing(
        self,
        image_id: str,
        worker_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        self._transition(
            image_id,
            JobStatus.PROCESSING,
            {"started_at": self._clock(), "job_id": job_id},
            worker_id,
        )

    def mark_complete(
        self,
        image_id: str,
        sizes: Dict[str, ResolutionResult],
        worker_id: Optional[str] = None,
    ) -> None:
        self._transition(
            image_id,
            JobStatus.COMPLETE,
            {
                "sizes": {name: r.model_copy() for name, r in sizes.items()},
                "processed_at": self._clock(),
                "error_message": None,
            },
            worker_id,
        )

    def mark_failed(self, image_id: str, error_message: str, worker_id: Optional[str] = None) -> None:
        self._transition(
            image_id,
            JobStatus.FAILED,
            {"processed_at": self._clock(), "error_message": error_message or "Unknown error"},
            worker_id,
            error=error_message,
        )

    def fail_stale(self, older_than_s: float, error_message: str) -> List[ImageRecord]:
        started_before = self._clock() - timedelta(seconds=older_than_s)
        failed = []
        with self._lock:
            for image_id, record in self._records.items():
                if record.status != JobStatus.PROCESSING or record.started_at is None:
                    continue
                if record.started_at < started_before:
                    self._records[image_id] = record.model_copy(
                        update={
                            "status": JobStatus.FAILED,
                            "processed_at": self._clock(),
                            "error_message": error_message,
                        }
                    )
                    self._log_transition(
                        image_id, JobStatus.PROCESSING, JobStatus.FAILED, error=error_message
                    )
                    failed.append(self._records[image_id].model_copy(deep=True))
        return failed

    def get_transitions(self, image_id: str) -> List[StateTransition]:
        with self._lock:
            return list(self._transitions.get(image_id, []))

    def list_records(self, status_filter: Optional[str] = None) -> List[ImageRecord]:
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.uploaded_at)
            return [
                r.model_copy(deep=True)
                for r in records
                if status_filter is None or r.status == JobStatus(status_filter)
            ]

    def _transition(
        self,
        image_id: str,
        to_state: JobStatus,
        updates: Dict[str, object],
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            record = self._records.get(image_id)
            if record is None:
                raise RecordNotFound(f"Image record not found: {image_id}")
            current = JobStatus(record.status)
            if not can_transition(current, to_state):
                raise InvalidTransition(image_id, current.value, to_state.value)
            self._records[image_id] = record.model_copy(update=dict(updates, status=to_state))
            self._log_transition(image_id, current, to_state, worker_id, error)

    def _log_transition(
        self,
        image_id: str,
        from_state: Optional[JobStatus],
        to_state: JobStatus,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self._transitions.setdefault(image_id, []).append(
            StateTransition(
                image_id=image_id,
                from_state=from_state,
                to_state=to_state,
                timestamp=self._clock(),
                worker_id=worker_id,
                error_snippet=error[:200] if error else None,
            )
        )
