"""Job queue, status stores and worker loop for the resize pipeline."""

from .backends import ImageRecordStore, JobQueue, JobStatusStore, WorkerPool
from .memory_backend import MemoryImageRecordStore, MemoryJobQueue, MemoryJobStatusStore
from .models import (
    ImageRecord,
    Job,
    JobStatus,
    JobStatusRecord,
    ResolutionResult,
    StateTransition,
)
from .redis_backend import RedisJobQueue, RedisJobStatusStore, get_redis
from .sqlite_backend import (
    SQLiteDatabase,
    SQLiteImageRecordStore,
    SQLiteJobQueue,
    SQLiteJobStatusStore,
)
from .worker import ResizeWorker, ResizeWorkerPool, run_with_timeout

__all__ = [
    "JobQueue",
    "JobStatusStore",
    "ImageRecordStore",
    "WorkerPool",
    "Job",
    "JobStatus",
    "JobStatusRecord",
    "ImageRecord",
    "ResolutionResult",
    "StateTransition",
    "SQLiteDatabase",
    "SQLiteJobQueue",
    "SQLiteJobStatusStore",
    "SQLiteImageRecordStore",
    "MemoryJobQueue",
    "MemoryJobStatusStore",
    "MemoryImageRecordStore",
    "RedisJobQueue",
    "RedisJobStatusStore",
    "get_redis",
    "ResizeWorker",
    "ResizeWorkerPool",
    "run_with_timeout",
]
