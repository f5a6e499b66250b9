"""Worker loop and thread pool for resize jobs.

This module provides:
- ResizeWorker: dequeue one job, resize it, advance both status records
- ResizeWorkerPool: N worker loops on a ThreadPoolExecutor
- run_with_timeout: bound a blocking call (storage I/O, transform)

Failure handling:
- Any error while processing marks the job in hand failed, then acks it
- A job whose record is already terminal (redelivery) is acked and skipped
- Status store write failures are logged and never fail the job
- Queue outages are logged; the claim is redelivered after its visibility timeout
- Every tick fails records left in processing past the job timeout by a lost
  worker, and now and then purges expired job statuses
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger

from ..errors import (
    InvalidTransition,
    QueueUnavailable,
    RecordNotFound,
    StepTimeout,
    describe_error,
)
from ..models import PipelineConfig
from ..resolutions import ORIGINAL, object_key
from ..storage import ObjectStore
from ..transformer import FALLBACK_FORMAT, Variant, format_size_label, transform
from .backends import ImageRecordStore, JobQueue, JobStatusStore, WorkerPool
from .models import Job, JobStatus, ResolutionResult


def run_with_timeout(fn: Callable, timeout_s: float, what: str, *args, **kwargs):
    """Run ``fn`` on a helper thread and wait at most ``timeout_s``.

    Raises:
        StepTimeout: if the call did not return in time. The helper thread is
            abandoned, not killed; its result is discarded.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bounded-step")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_s)
    except FutureTimeout as e:
        raise StepTimeout(f"{what} exceeded {timeout_s:.1f}s") from e
    finally:
        executor.shutdown(wait=False)


def variant_extension(original_name: str, resolution: str, variant: Variant) -> str:
    """File extension for a stored variant.

    Derived variants re-encoded to the fallback format get ``.jpg``; everything
    else keeps the extension of the uploaded file name.
    """
    ext = Path(original_name).suffix.lower()
    if resolution != ORIGINAL and variant.format == FALLBACK_FORMAT and ext not in (".jpg", ".jpeg"):
        return ".jpg"
    return ext


class ResizeWorker:
    """Processes resize jobs one at a time against injected stores."""

    def __init__(
        self,
        queue: JobQueue,
        status_store: JobStatusStore,
        record_store: ImageRecordStore,
        object_store: ObjectStore,
        config: Optional[PipelineConfig] = None,
        worker_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        on_close: Optional[Callable[[], None]] = None,
    ):
        self.queue = queue
        self.status_store = status_store
        self.record_store = record_store
        self.object_store = object_store
        self.config = config or PipelineConfig()
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.resolutions = self.config.resolution_table()
        self._clock = clock
        self._next_purge: Optional[float] = None
        self._on_close = on_close
        self.log = logger.bind(worker_id=self.worker_id)

    def close(self) -> None:
        """Release resources the worker was built with (its thread's database)."""
        if self._on_close is not None:
            self._on_close()
            self._on_close = None

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        max_jobs: Optional[int] = None,
        exit_when_empty: bool = False,
    ) -> int:
        """Poll until stopped.

        Args:
            stop_event: Set it to finish the current job and return
            max_jobs: Return after this many jobs
            exit_when_empty: Return the first time the queue is empty

        Returns:
            Number of jobs handled
        """
        stop_event = stop_event or threading.Event()
        handled = 0
        self.log.bind(event="worker_started").info("Worker started")

        while not stop_event.is_set():
            if max_jobs is not None and handled >= max_jobs:
                break
            if self.run_once():
                handled += 1
                continue
            if exit_when_empty:
                break
            stop_event.wait(self.config.worker.poll_interval_s)

        self.log.bind(event="worker_stopped").info("Worker stopped after {} job(s)", handled)
        return handled

    def run_once(self) -> bool:
        """One poll tick. Returns True if a job was taken off the queue."""
        self._sweep()

        try:
            requeued = self.queue.requeue_expired()
            if requeued:
                self.log.bind(event="requeued").warning(
                    "Requeued {} job(s) past their visibility timeout", requeued
                )
            job = self.queue.dequeue(self.worker_id)
        except QueueUnavailable as e:
            self.log.bind(event="queue_unavailable").error("Queue unavailable: {}", e)
            return False

        if job is None:
            return False

        try:
            self.process_job(job)
        except QueueUnavailable as e:
            # Left claimed; redelivered once the visibility timeout elapses
            self.log.bind(event="queue_unavailable", job_id=job.job_id).error(
                "Store unavailable while finishing job: {}", e
            )
        except Exception:
            # Left claimed; the loop keeps running
            self.log.bind(event="job_crashed", job_id=job.job_id).exception(
                "Unexpected error while handling job"
            )
        return True

    def process_job(self, job: Job) -> JobStatus:
        """Resize one job and move both status records to a terminal state.

        Returns:
            The terminal status the job ended in
        """
        log = self.log.bind(job_id=job.job_id, image_id=job.image_id)

        record = self.record_store.get(job.image_id)
        if record is None:
            log.bind(event="record_missing").error("Image record not found, dropping job")
            self._set_job_status(job.job_id, JobStatus.FAILED, log)
            self._ack(job, log)
            return JobStatus.FAILED

        if JobStatus(record.status).is_terminal:
            log.bind(event="duplicate_delivery").info(
                "Record already {}, acking redelivered job", JobStatus(record.status).value
            )
            self._ack(job, log)
            return JobStatus(record.status)

        started = self._clock()
        deadline = started + self.config.worker.job_timeout_s

        try:
            self._set_job_status(job.job_id, JobStatus.PROCESSING, log)
            self.record_store.mark_processing(
                job.image_id, worker_id=self.worker_id, job_id=job.job_id
            )
            log.bind(event="processing").info("Processing {}", job.original_path)

            sizes = self._resize(job, deadline, log)
            self._remaining(deadline, self.config.worker.job_timeout_s)

            self.record_store.mark_complete(job.image_id, sizes, worker_id=self.worker_id)
            self._set_job_status(job.job_id, JobStatus.COMPLETE, log)
            log.bind(event="complete").success(
                "Stored {} resolution(s) in {:.2f}s", len(sizes), self._clock() - started
            )
            outcome = JobStatus.COMPLETE
        except RecordNotFound as e:
            log.bind(event="record_missing").error("{}", describe_error(e))
            self._set_job_status(job.job_id, JobStatus.FAILED, log)
            outcome = JobStatus.FAILED
        except QueueUnavailable:
            raise
        except Exception as e:
            outcome = self._fail(job, e, log)

        self._ack(job, log)
        return outcome

    def _resize(self, job: Job, deadline: float, log) -> Dict[str, ResolutionResult]:
        storage = self.config.storage
        bucket = storage.bucket

        data = run_with_timeout(
            self.object_store.get,
            self._remaining(deadline, storage.timeout_s),
            f"download of {job.original_path}",
            bucket,
            job.original_path,
        )
        log.bind(event="downloaded").debug("Downloaded {} bytes", len(data))

        variants = run_with_timeout(
            transform,
            self._remaining(deadline, self.config.worker.transform_timeout_s),
            "transform",
            data,
            self.resolutions,
        )

        sizes: Dict[str, ResolutionResult] = {}
        for name, variant in variants.items():
            ext = variant_extension(job.original_name, name, variant)
            key = object_key(name, job.user_id, job.image_id, ext)
            url = run_with_timeout(
                self.object_store.put,
                self._remaining(deadline, storage.timeout_s),
                f"upload of {key}",
                bucket,
                key,
                variant.data,
                variant.content_type,
            )
            unit = "MB" if name == ORIGINAL else "KB"
            sizes[name] = ResolutionResult(
                url=url,
                width=variant.width,
                height=variant.height,
                size_label=format_size_label(variant.size_bytes, unit),
            )
            log.bind(event="uploaded").debug("{} -> {}", name, key)
        return sizes

    def _remaining(self, deadline: float, step_timeout_s: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise StepTimeout(
                f"job exceeded its {self.config.worker.job_timeout_s:.1f}s deadline"
            )
        return min(step_timeout_s, remaining)

    def _sweep(self) -> None:
        """Fail records a lost worker left in processing; purge expired statuses."""
        timeout = self.config.worker.job_timeout_s
        message = describe_error(StepTimeout(f"no progress for {timeout:.0f}s (worker lost)"))
        try:
            stale = self.record_store.fail_stale(timeout, message)
        except QueueUnavailable as e:
            self.log.bind(event="sweep_failed").warning("Stale record sweep skipped: {}", e)
            stale = []
        for record in stale:
            log = self.log.bind(image_id=record.image_id, job_id=record.job_id or "-")
            log.bind(event="stale_failed").warning("Failed record stuck in processing")
            if record.job_id:
                self._set_job_status(record.job_id, JobStatus.FAILED, log)

        now = self._clock()
        if self._next_purge is not None and now < self._next_purge:
            return
        self._next_purge = now + self.config.worker.purge_interval_s
        try:
            purged = self.status_store.purge_expired()
        except QueueUnavailable as e:
            self.log.bind(event="purge_failed").warning("Status purge skipped: {}", e)
            return
        if purged:
            self.log.bind(event="purged").info("Purged {} expired job status(es)", purged)

    def _fail(self, job: Job, exc: Exception, log) -> JobStatus:
        message = describe_error(exc)
        log.bind(event="failed").error("Job failed: {}", message)
        try:
            self.record_store.mark_failed(job.image_id, message, worker_id=self.worker_id)
        except (InvalidTransition, RecordNotFound) as e:
            log.bind(event="record_not_failed").warning(
                "Could not mark record failed: {}", describe_error(e)
            )
        self._set_job_status(job.job_id, JobStatus.FAILED, log)
        return JobStatus.FAILED

    def _set_job_status(self, job_id: str, status: JobStatus, log) -> None:
        try:
            self.status_store.set_status(job_id, status)
        except QueueUnavailable as e:
            log.bind(event="status_write_failed").warning(
                "Job status {} not written: {}", status.value, e
            )

    def _ack(self, job: Job, log) -> None:
        try:
            self.queue.ack(job)
        except QueueUnavailable as e:
            log.bind(event="ack_failed").warning("Ack failed, job will be redelivered: {}", e)


class ResizeWorkerPool(WorkerPool):
    """Runs several ResizeWorker loops on a thread pool.

    Workers are built inside their own thread (``make_worker(index)``) so
    thread-bound resources such as sqlite3 connections stay in that thread.

    Usage:
        with ResizeWorkerPool(4) as pool:
            pool.start(make_worker)
            pool.wait()
    """

    def __init__(self, n_workers: int = 1):
        self.n_workers = n_workers
        self.stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List = []

    def __enter__(self):
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers, thread_name_prefix="resize-worker"
        )
        return self

    def __exit__(self, *args):
        self.stop()
        self.shutdown(wait=True)

    def submit(self, fn: Callable, *args, **kwargs):
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")
        future = self._executor.submit(fn, *args, **kwargs)
        self._futures.append(future)
        return future

    def start(
        self,
        make_worker: Callable[[int], ResizeWorker],
        max_jobs: Optional[int] = None,
        exit_when_empty: bool = False,
    ) -> List:
        """Launch one loop per worker slot."""
        return [
            self.submit(self._run_worker, make_worker, index, max_jobs, exit_when_empty)
            for index in range(self.n_workers)
        ]

    def _run_worker(self, make_worker, index, max_jobs, exit_when_empty) -> int:
        worker = make_worker(index)
        try:
            return worker.run(
                stop_event=self.stop_event, max_jobs=max_jobs, exit_when_empty=exit_when_empty
            )
        finally:
            worker.close()

    def wait(self) -> int:
        """Block until every loop returns. Returns total jobs handled."""
        return sum(future.result() for future in self._futures)

    def stop(self) -> None:
        """Ask every loop to return after its current job."""
        self.stop_event.set()

    def shutdown(self, wait: bool = True) -> None:
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None
