"""High-level API over the queue, stores and worker pool.

Usage:
    config = resolve_config()
    components = build_components(config)
    check_components(components)

    image_id, job_id = producer.submit_image(components, "user-1", "cat.jpg", data)
    run_workers(config, exit_when_empty=True)

    record = get_image_record(components, image_id)
    status = get_job_status(components, job_id)
"""

import os
import socket
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from loguru import logger

from .errors import RecordNotFound, StepTimeout, describe_error
from .models import PipelineConfig
from .queue.backends import ImageRecordStore, JobQueue, JobStatusStore
from .queue.memory_backend import MemoryImageRecordStore, MemoryJobQueue, MemoryJobStatusStore
from .queue.models import ImageRecord, JobStatus
from .queue.redis_backend import RedisJobQueue, RedisJobStatusStore, get_redis
from .queue.sqlite_backend import (
    SQLiteDatabase,
    SQLiteImageRecordStore,
    SQLiteJobQueue,
    SQLiteJobStatusStore,
)
from .queue.worker import ResizeWorker, ResizeWorkerPool
from .storage import GCSObjectStore, LocalObjectStore, ObjectStore, S3ObjectStore


@dataclass
class Components:
    """Everything a worker or a status reader talks to."""

    config: PipelineConfig
    queue: JobQueue
    status_store: JobStatusStore
    record_store: ImageRecordStore
    object_store: ObjectStore
    database: Optional[SQLiteDatabase] = None

    def close(self) -> None:
        if self.database is not None:
            self.database.close()


def build_object_store(config: PipelineConfig) -> ObjectStore:
    storage = config.storage
    if storage.backend == "gcs":
        kwargs = {"timeout_s": storage.timeout_s}
        if storage.public_base_url:
            kwargs["public_base_url"] = storage.public_base_url
        return GCSObjectStore(**kwargs)
    if storage.backend == "s3":
        return S3ObjectStore(
            region=storage.region,
            endpoint_url=storage.endpoint_url,
            public_base_url=storage.public_base_url,
            timeout_s=storage.timeout_s,
        )
    return LocalObjectStore(storage.local_root, public_base_url=storage.public_base_url)


def build_components(config: PipelineConfig, shared: Optional[Components] = None) -> Components:
    """Construct queue, stores and object store from config.

    SQLite handles are opened fresh (one connection per calling thread).
    Memory backends are taken from ``shared`` when given so every worker
    thread sees the same in-process queue and stores.
    """
    backends = {config.queue.backend, config.status.backend, config.records.backend}

    database = None
    if "sqlite" in backends:
        database = SQLiteDatabase(config.database.path, config.database.busy_timeout_ms)

    redis_client = None
    if "redis" in backends:
        redis_client = get_redis(config.redis.url, config.redis.socket_timeout_s)

    visibility = config.queue.visibility_timeout_s
    if config.queue.backend == "sqlite":
        queue = SQLiteJobQueue(database, visibility_timeout_s=visibility)
    elif config.queue.backend == "redis":
        queue = RedisJobQueue(
            redis_client, queue_key=config.queue.queue_key, visibility_timeout_s=visibility
        )
    else:
        queue = shared.queue if shared else MemoryJobQueue(visibility_timeout_s=visibility)

    ttl = config.status.ttl_s
    if config.status.backend == "sqlite":
        status_store = SQLiteJobStatusStore(database, ttl_s=ttl)
    elif config.status.backend == "redis":
        status_store = RedisJobStatusStore(
            redis_client, ttl_s=ttl, key_prefix=config.status.key_prefix
        )
    else:
        status_store = shared.status_store if shared else MemoryJobStatusStore(ttl_s=ttl)

    if config.records.backend == "sqlite":
        record_store = SQLiteImageRecordStore(database)
    else:
        record_store = shared.record_store if shared else MemoryImageRecordStore()

    object_store = shared.object_store if shared else build_object_store(config)

    return Components(
        config=config,
        queue=queue,
        status_store=status_store,
        record_store=record_store,
        object_store=object_store,
        database=database,
    )


def check_components(components: Components) -> None:
    """Startup reachability check.

    Raises:
        QueueUnavailable: queue or status store unreachable
        StorageError: bucket unreachable
    """
    components.queue.ping()
    components.status_store.ping()
    components.object_store.ping(components.config.storage.bucket)


def worker_id_for(index: int) -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{index}"


def run_workers(
    config: PipelineConfig,
    n_workers: Optional[int] = None,
    max_jobs: Optional[int] = None,
    exit_when_empty: bool = False,
    shared: Optional[Components] = None,
    stop_event: Optional[threading.Event] = None,
) -> int:
    """Run worker loops until stopped (Ctrl+C) or drained.

    Args:
        config: Resolved configuration
        n_workers: Loop count (default: config.worker.workers)
        max_jobs: Per-worker job limit
        exit_when_empty: Return once the queue is empty
        shared: Components whose memory backends the workers reuse
        stop_event: Optional external stop signal

    Returns:
        Total jobs handled
    """
    n_workers = n_workers or config.worker.workers
    owned = shared is None
    shared = shared or build_components(config)

    def make_worker(index: int) -> ResizeWorker:
        components = build_components(config, shared=shared)
        return ResizeWorker(
            components.queue,
            components.status_store,
            components.record_store,
            components.object_store,
            config=config,
            worker_id=worker_id_for(index),
            on_close=components.close,
        )

    logger.bind(event="pool_started").info("Starting {} worker(s)", n_workers)
    try:
        with ResizeWorkerPool(n_workers=n_workers) as pool:
            if stop_event is not None:
                pool.stop_event = stop_event
            pool.start(make_worker, max_jobs=max_jobs, exit_when_empty=exit_when_empty)
            try:
                return pool.wait()
            except KeyboardInterrupt:
                logger.bind(event="pool_stopping").warning("Interrupted, finishing current jobs")
                pool.stop()
                return pool.wait()
    finally:
        if owned:
            shared.close()


def get_queue_stats(components: Components) -> Dict[str, Any]:
    """Queue depth plus image record counts per status."""
    stats: Dict[str, Any] = dict(components.queue.stats())
    records = components.record_store.list_records()
    for status in JobStatus:
        stats[f"records_{status.value}"] = sum(1 for r in records if JobStatus(r.status) == status)
    stats["records_total"] = len(records)
    return stats


def recover_stale(components: Components, stale_after_s: Optional[float] = None) -> Dict[str, Any]:
    """Crash recovery, the same sweep every worker tick runs.

    Requeues claims past their visibility timeout, fails image records stuck
    in ``processing`` longer than ``stale_after_s`` (default: the job timeout)
    and deletes expired job statuses.

    Returns:
        {"requeued": int, "failed": [image_id, ...], "purged": int}
    """
    stale_after_s = stale_after_s or components.config.worker.job_timeout_s
    requeued = components.queue.requeue_expired()
    stale = components.record_store.fail_stale(
        stale_after_s,
        describe_error(StepTimeout(f"no progress for {stale_after_s:.0f}s (worker lost)")),
    )
    for record in stale:
        logger.bind(image_id=record.image_id, event="stale_failed").warning(
            "Failed record stuck in processing"
        )
        if record.job_id:
            components.status_store.set_status(record.job_id, JobStatus.FAILED)
    purged = components.status_store.purge_expired()
    return {"requeued": requeued, "failed": [r.image_id for r in stale], "purged": purged}


def get_image_record(components: Components, image_id: str) -> ImageRecord:
    """Read-only lookup of an image record.

    Raises:
        RecordNotFound: unknown image_id
    """
    record = components.record_store.get(image_id)
    if record is None:
        raise RecordNotFound(f"Image record not found: {image_id}")
    return record


def get_job_status(components: Components, job_id: str) -> Optional[JobStatus]:
    """Read-only job status; None when unknown or expired."""
    return components.status_store.get_status(job_id)

