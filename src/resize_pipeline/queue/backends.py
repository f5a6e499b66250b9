"""Abstract base classes for the job queue, status stores and worker pool.

These interfaces are what the worker loop is constructed with. Concrete
implementations live in ``sqlite_backend`` (local, crash-safe), ``redis_backend``
(shared queue and TTL status) and ``memory_backend`` (in-process, tests).
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .models import ImageRecord, Job, JobStatus, JobStatusRecord, ResolutionResult, StateTransition


class JobQueue(ABC):
    """Durable handoff of resize jobs from producer to workers.

    Implementations must provide:
    - Atomic dequeue (no two workers receive the same job)
    - Idempotent enqueue (same job_id twice is a no-op)
    - At-least-once delivery via ack-after-complete and a visibility timeout
    """

    @abstractmethod
    def enqueue(self, job: "Job") -> str:
        """Add job to the pending set.

        Args:
            job: Immutable job description

        Returns:
            The job_id
        """
        pass

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["Job"]:
        """Atomically claim the next pending job.

        Args:
            worker_id: Identifier of the claiming worker

        Returns:
            Job if one was pending, None if the queue is empty

        Implementation notes:
        - MUST be safe under concurrent callers
        - The claim stays invisible to other workers until ack() or until
          the visibility timeout elapses and requeue_expired() runs
        """
        pass

    @abstractmethod
    def ack(self, job: "Job") -> None:
        """Remove a finished (complete or failed) job from the queue."""
        pass

    @abstractmethod
    def requeue_expired(self) -> int:
        """Return claims whose visibility timeout elapsed to the pending set.

        Returns:
            Count of requeued jobs
        """
        pass

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Counts of pending and in-flight jobs."""
        pass

    @abstractmethod
    def ping(self) -> None:
        """Raise QueueUnavailable if the backing store is unreachable."""
        pass


class JobStatusStore(ABC):
    """Ephemeral TTL'd job status keyed by job_id.

    Not-found always means "unknown or expired" and is never an error.
    """

    @abstractmethod
    def set_status(self, job_id: str, status: "JobStatus") -> None:
        """Overwrite the status and reset its TTL."""
        pass

    @abstractmethod
    def get_record(self, job_id: str) -> Optional["JobStatusRecord"]:
        """Return the live record, or None if unknown/expired."""
        pass

    def get_status(self, job_id: str) -> Optional["JobStatus"]:
        record = self.get_record(job_id)
        return record.status if record else None

    def ping(self) -> None:
        """Raise QueueUnavailable if the backing store is unreachable."""
        return None

    def purge_expired(self) -> int:
        """Delete entries whose TTL elapsed. Stores with native expiry return 0."""
        return 0


class ImageRecordStore(ABC):
    """Durable per-image records with an enforced state machine.

    Every mutation checks the allowed transitions
    (pending → processing → {complete, failed}) and raises
    InvalidTransition otherwise, RecordNotFound for unknown ids.
    """

    @abstractmethod
    def create(self, record: "ImageRecord") -> None:
        """Insert a new pending record (producer side)."""
        pass

    @abstractmethod
    def get(self, image_id: str) -> Optional["ImageRecord"]:
        """Fetch a record, or None if it doesn't exist."""
        pass

    @abstractmethod
    def mark_processing(
        self,
        image_id: str,
        worker_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        """Enter processing, stamp started_at and the job_id doing the work."""
        pass

    @abstractmethod
    def mark_complete(
        self,
        image_id: str,
        sizes: Dict[str, "ResolutionResult"],
        worker_id: Optional[str] = None,
    ) -> None:
        """Replace sizes wholesale, set processed_at and mark complete."""
        pass

    @abstractmethod
    def mark_failed(self, image_id: str, error_message: str, worker_id: Optional[str] = None) -> None:
        """Set error_message and processed_at, mark failed; sizes untouched."""
        pass

    @abstractmethod
    def fail_stale(self, older_than_s: float, error_message: str) -> List["ImageRecord"]:
        """Fail records stuck in processing for more than ``older_than_s``.

        Returns:
            The records that were failed
        """
        pass

    @abstractmethod
    def get_transitions(self, image_id: str) -> List["StateTransition"]:
        """Audit trail for one record, oldest first."""
        pass

    @abstractmethod
    def list_records(self, status_filter: Optional[str] = None) -> List["ImageRecord"]:
        """Query records by status (O(n), for status commands)."""
        pass


class WorkerPool(ABC):
    """Concurrency manager running several worker loops side by side."""

    @abstractmethod
    def submit(self, fn: Callable, *args, **kwargs) -> Any:
        """Submit a callable to the pool and return its future."""
        pass

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for running loops to return
        """
        pass
