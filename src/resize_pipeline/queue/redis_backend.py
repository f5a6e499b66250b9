"""Redis implementations of JobQueue and JobStatusStore.

Queue layout (producer LPUSHes, workers take from the right):
- ``<queue_key>``             list of pending job payloads (JSON)
- ``<queue_key>:processing``  list of claimed payloads (reliable pop target)
- ``<queue_key>:claims``      ZSET payload -> visibility deadline (unix ts)
- ``<queue_key>:enqueued:<job_id>``  dedupe marker for idempotent enqueue

Job status lives at ``job:<job_id>`` as ``{"status": ...}`` with EX = TTL, the
same key format the upload service writes.
"""

import json
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Dict, Optional

import redis

from ..errors import QueueUnavailable
from .backends import JobQueue, JobStatusStore
from .models import Job, JobStatus, JobStatusRecord, utcnow


def get_redis(url: str, socket_timeout_s: float = 5.0) -> "redis.Redis":
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=socket_timeout_s,
        socket_connect_timeout=socket_timeout_s,
    )


@contextmanager
def _redis_errors(action: str):
    try:
        yield
    except redis.exceptions.RedisError as e:
        raise QueueUnavailable(f"redis {action} failed: {e}") from e


class RedisJobQueue(JobQueue):
    """Reliable queue: LMOVE into a processing list, LREM on ack."""

    def __init__(
        self,
        client: "redis.Redis",
        queue_key: str = "resize-queue",
        visibility_timeout_s: int = 300,
        dedupe_ttl_s: int = 86400,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.queue_key = queue_key
        self.processing_key = f"{queue_key}:processing"
        self.claims_key = f"{queue_key}:claims"
        self.visibility_timeout_s = visibility_timeout_s
        self.dedupe_ttl_s = dedupe_ttl_s
        self._clock = clock
        # job_id -> raw payload as popped, so ack removes the exact list entry
        self._in_flight: Dict[str, str] = {}

    def enqueue(self, job: Job) -> str:
        with _redis_errors("enqueue"):
            first = self.client.set(
                f"{self.queue_key}:enqueued:{job.job_id}", 1, nx=True, ex=self.dedupe_ttl_s
            )
            if first:
                self.client.lpush(self.queue_key, job.model_dump_json())
        return job.job_id

    def dequeue(self, worker_id: str) -> Optional[Job]:
        with _redis_errors("dequeue"):
            payload = self.client.lmove(self.queue_key, self.processing_key, "RIGHT", "LEFT")
            if payload is None:
                return None
            deadline = self._clock() + self.visibility_timeout_s
            self.client.zadd(self.claims_key, {payload: deadline})

        job = Job.model_validate_json(payload)
        self._in_flight[job.job_id] = payload
        return job

    def ack(self, job: Job) -> None:
        payload = self._in_flight.pop(job.job_id, None) or job.model_dump_json()
        with _redis_errors("ack"):
            pipe = self.client.pipeline()
            pipe.lrem(self.processing_key, 1, payload)
            pipe.zrem(self.claims_key, payload)
            pipe.execute()

    def requeue_expired(self) -> int:
        now = self._clock()
        requeued = 0
        with _redis_errors("requeue"):
            # Claims lost between LMOVE and ZADD get a fresh deadline
            for payload in self.client.lrange(self.processing_key, 0, -1):
                self.client.zadd(
                    self.claims_key, {payload: now + self.visibility_timeout_s}, nx=True
                )

            for payload in self.client.zrangebyscore(self.claims_key, 0, now):
                pipe = self.client.pipeline()
                pipe.lrem(self.processing_key, 1, payload)
                pipe.zrem(self.claims_key, payload)
                removed, _ = pipe.execute()
                # 0 means another worker already requeued or acked it
                if removed:
                    self.client.rpush(self.queue_key, payload)
                    requeued += 1
        return requeued

    def stats(self) -> Dict[str, int]:
        with _redis_errors("stats"):
            return {
                "pending": int(self.client.llen(self.queue_key)),
                "in_flight": int(self.client.llen(self.processing_key)),
            }

    def ping(self) -> None:
        with _redis_errors("ping"):
            self.client.ping()


class RedisJobStatusStore(JobStatusStore):
    """``SET job:<id> {"status": ...} EX ttl``; Redis expiry is the GC."""

    def __init__(self, client: "redis.Redis", ttl_s: int = 86400, key_prefix: str = "job:"):
        self.client = client
        self.ttl_s = ttl_s
        self.key_prefix = key_prefix

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    def set_status(self, job_id: str, status: JobStatus) -> None:
        with _redis_errors("status write"):
            self.client.set(
                self._key(job_id),
                json.dumps({"status": JobStatus(status).value}),
                ex=self.ttl_s,
            )

    def get_record(self, job_id: str) -> Optional[JobStatusRecord]:
        with _redis_errors("status read"):
            pipe = self.client.pipeline()
            pipe.get(self._key(job_id))
            pipe.ttl(self._key(job_id))
            raw, ttl = pipe.execute()

        if raw is None:
            return None
        try:
            status = JobStatus(json.loads(raw)["status"])
        except (ValueError, KeyError, TypeError):
            return None
        return JobStatusRecord(
            job_id=job_id,
            status=status,
            expires_at=utcnow() + timedelta(seconds=max(int(ttl), 0)),
        )

    def ping(self) -> None:
        with _redis_errors("ping"):
            self.client.ping()
