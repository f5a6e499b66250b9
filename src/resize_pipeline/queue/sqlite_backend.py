"""SQLite implementations of JobQueue, JobStatusStore and ImageRecordStore.

This module provides the local-first, crash-safe backends using:
- sqlite-utils for schema management and simple row access
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic dequeue and state transitions
- Exponential backoff retry for database lock handling

All three stores can share one database file. sqlite3 connections are bound
to the thread that opened them, so every worker thread builds its own
SQLiteDatabase against the same path.
"""

import json
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlite_utils import Database

from ..errors import InvalidTransition, QueueUnavailable, RecordNotFound
from .backends import ImageRecordStore, JobQueue, JobStatusStore
from .models import (
    ImageRecord,
    Job,
    JobStatus,
    JobStatusRecord,
    ResolutionResult,
    StateTransition,
    can_transition,
    from_iso,
    to_iso,
    utcnow,
)

# SQLite schema SQL
SCHEMA_SQL = """
-- Pending and claimed resize jobs
CREATE TABLE IF NOT EXISTS resize_jobs (
    job_id TEXT PRIMARY KEY,
    image_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    enqueued_at TEXT NOT NULL,
    claimed_by TEXT,
    claimed_at TEXT,
    visible_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_state ON resize_jobs(state, enqueued_at);

-- Ephemeral job status (TTL via expires_at)
CREATE TABLE IF NOT EXISTS job_status (
    job_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_job_status_expiry ON job_status(expires_at);

-- Durable image records
CREATE TABLE IF NOT EXISTS image_records (
    image_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    original_name TEXT NOT NULL,
    status TEXT NOT NULL,
    job_id TEXT,
    sizes TEXT NOT NULL,
    uploaded_at TEXT NOT NULL,
    started_at TEXT,
    processed_at TEXT,
    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_records_status ON image_records(status, started_at);
CREATE INDEX IF NOT EXISTS idx_records_user ON image_records(user_id, uploaded_at);

-- Image record state transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    image_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT,
    FOREIGN KEY(image_id) REFERENCES image_records(image_id)
);

CREATE INDEX IF NOT EXISTS idx_transitions_image ON state_transitions(image_id, id);
"""

QUEUED = "queued"
CLAIMED = "claimed"


@contextmanager
def _sqlite_errors(action: str):
    try:
        yield
    except sqlite3.Error as e:
        raise QueueUnavailable(f"{action} failed: {e}") from e


class SQLiteDatabase:
    """Shared database handle with WAL mode and schema creation."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        """Open (and create if needed) the pipeline database.

        Args:
            db_path: Path to SQLite database file
            busy_timeout_ms: How long a writer waits on a locked database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self.db = Database(str(self.db_path))
        self.conn = self.db.conn

        self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.commit()

        self.db.executescript(SCHEMA_SQL)

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE transaction: write lock taken up front."""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    def ping(self) -> None:
        try:
            self.conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            raise QueueUnavailable(f"database {self.db_path} unreachable: {e}") from e

    def close(self) -> None:
        self.conn.close()


class SQLiteJobQueue(JobQueue):
    """SQLite-based queue with atomic claim and visibility timeout.

    Concurrency safety:
    - BEGIN IMMEDIATE ensures write lock from transaction start
    - Prevents race where multiple workers claim same job
    - Exponential backoff handles transient lock contention
    """

    def __init__(
        self,
        database: SQLiteDatabase,
        visibility_timeout_s: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.db = database.db
        self.visibility_timeout_s = visibility_timeout_s
        self._clock = clock

    def enqueue(self, job: Job) -> str:
        """Insert job as queued; a second enqueue of the same job_id is a no-op."""
        try:
            self.db["resize_jobs"].insert(
                {
                    "job_id": job.job_id,
                    "image_id": job.image_id,
                    "payload": job.model_dump_json(),
                    "state": QUEUED,
                    "enqueued_at": to_iso(job.enqueued_at),
                },
                pk="job_id",
                ignore=True,
            )
        except sqlite3.Error as e:
            raise QueueUnavailable(f"enqueue failed: {e}") from e
        return job.job_id

    def dequeue(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the oldest queued job.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING
        Retry logic: Exponential backoff on database lock
        """
        return self._dequeue_with_retry(worker_id, max_retries=3)

    def _dequeue_with_retry(self, worker_id: str, max_retries: int = 3) -> Optional[Job]:
        for attempt in range(max_retries):
            try:
                now = self._clock()
                visible_at = now + timedelta(seconds=self.visibility_timeout_s)

                with self.database.transaction() as conn:
                    rows = conn.execute(
                        """
                        UPDATE resize_jobs
                        SET state = ?,
                            claimed_by = ?,
                            claimed_at = ?,
                            visible_at = ?
                        WHERE job_id = (
                            SELECT job_id FROM resize_jobs
                            WHERE state = ?
                            ORDER BY enqueued_at ASC, rowid ASC
                            LIMIT 1
                        )
                        RETURNING payload
                        """,
                        (CLAIMED, worker_id, to_iso(now), to_iso(visible_at), QUEUED),
                    ).fetchall()

                if not rows:
                    return None
                return Job.model_validate_json(rows[0][0])

            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    # 100ms, 200ms, 400ms
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise QueueUnavailable(f"dequeue failed: {e}") from e
            except sqlite3.Error as e:
                raise QueueUnavailable(f"dequeue failed: {e}") from e

        return None

    def ack(self, job: Job) -> None:
        try:
            with self.database.transaction() as conn:
                conn.execute("DELETE FROM resize_jobs WHERE job_id = ?", (job.job_id,))
        except sqlite3.Error as e:
            raise QueueUnavailable(f"ack failed for {job.job_id}: {e}") from e

    def requeue_expired(self) -> int:
        """Crash recovery: release claims past their visibility deadline."""
        try:
            with self.database.transaction() as conn:
                rows = conn.execute(
                    """
                    UPDATE resize_jobs
                    SET state = ?, claimed_by = NULL, claimed_at = NULL, visible_at = NULL
                    WHERE state = ? AND visible_at < ?
                    RETURNING job_id
                    """,
                    (QUEUED, CLAIMED, to_iso(self._clock())),
                ).fetchall()
        except sqlite3.Error as e:
            raise QueueUnavailable(f"requeue failed: {e}") from e
        return len(rows)

    def stats(self) -> Dict[str, int]:
        counts = {QUEUED: 0, CLAIMED: 0}
        with _sqlite_errors("queue stats"):
            rows = self.database.conn.execute(
                "SELECT state, COUNT(*) FROM resize_jobs GROUP BY state"
            ).fetchall()
        for state, count in rows:
            counts[state] = count
        return {"pending": counts[QUEUED], "in_flight": counts[CLAIMED]}

    def ping(self) -> None:
        self.database.ping()


class SQLiteJobStatusStore(JobStatusStore):
    """Job status with an expires_at column; expired rows read as not-found."""

    def __init__(
        self,
        database: SQLiteDatabase,
        ttl_s: int = 86400,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.db = database.db
        self.ttl_s = ttl_s
        self._clock = clock

    def set_status(self, job_id: str, status: JobStatus) -> None:
        now = self._clock()
        try:
            self.db["job_status"].insert(
                {
                    "job_id": job_id,
                    "status": JobStatus(status).value,
                    "updated_at": to_iso(now),
                    "expires_at": to_iso(now + timedelta(seconds=self.ttl_s)),
                },
                pk="job_id",
                replace=True,
            )
        except sqlite3.Error as e:
            raise QueueUnavailable(f"status write failed for {job_id}: {e}") from e

    def get_record(self, job_id: str) -> Optional[JobStatusRecord]:
        with _sqlite_errors(f"status read for {job_id}"):
            rows = list(
                self.db["job_status"].rows_where(
                    "job_id = ? AND expires_at > ?", [job_id, to_iso(self._clock())]
                )
            )
        if not rows:
            return None
        row = rows[0]
        return JobStatusRecord(
            job_id=row["job_id"],
            status=JobStatus(row["status"]),
            expires_at=from_iso(row["expires_at"]),
        )

    def ping(self) -> None:
        self.database.ping()

    def purge_expired(self) -> int:
        """Garbage-collect rows whose TTL already elapsed."""
        with _sqlite_errors("status purge"), self.database.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM job_status WHERE expires_at <= ?", (to_iso(self._clock()),)
            )
            return cursor.rowcount


class SQLiteImageRecordStore(ImageRecordStore):
    """Image records with transition checks inside one IMMEDIATE transaction."""

    def __init__(self, database: SQLiteDatabase, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self.db = database.db
        self._clock = clock

    def create(self, record: ImageRecord) -> None:
        row = self._record_to_row(record)
        try:
            with self.database.transaction() as conn:
                existing = conn.execute(
                    "SELECT 1 FROM image_records WHERE image_id = ?", (record.image_id,)
                ).fetchone()
                if existing:
                    raise ValueError(f"Image record already exists: {record.image_id}")
                columns = ", ".join(row)
                placeholders = ", ".join("?" for _ in row)
                conn.execute(
                    f"INSERT INTO image_records ({columns}) VALUES ({placeholders})",
                    list(row.values()),
                )
                self._log_transition(conn, record.image_id, None, JobStatus(record.status))
        except sqlite3.Error as e:
            raise QueueUnavailable(f"record create failed for {record.image_id}: {e}") from e

    def get(self, image_id: str) -> Optional[ImageRecord]:
        with _sqlite_errors(f"record read for {image_id}"):
            rows = list(self.db["image_records"].rows_where("image_id = ?", [image_id]))
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def mark_processing(
        self,
        image_id: str,
        worker_id: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        self._transition(
            image_id,
            JobStatus.PROCESSING,
            {"started_at": to_iso(self._clock()), "job_id": job_id},
            worker_id=worker_id,
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
                "sizes": json.dumps({name: r.model_dump() for name, r in sizes.items()}),
                "processed_at": to_iso(self._clock()),
                "error_message": None,
            },
            worker_id=worker_id,
        )

    def mark_failed(self, image_id: str, error_message: str, worker_id: Optional[str] = None) -> None:
        self._transition(
            image_id,
            JobStatus.FAILED,
            {"processed_at": to_iso(self._clock()), "error_message": error_message or "Unknown error"},
            worker_id=worker_id,
            error=error_message,
        )

    def fail_stale(self, older_than_s: float, error_message: str) -> List[ImageRecord]:
        now = self._clock()
        started_before = now - timedelta(seconds=older_than_s)
        with _sqlite_errors("stale record sweep"), self.database.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE image_records
                SET status = ?, processed_at = ?, error_message = ?
                WHERE status = ? AND started_at < ?
                RETURNING *
                """,
                (
                    JobStatus.FAILED.value,
                    to_iso(now),
                    error_message,
                    JobStatus.PROCESSING.value,
                    to_iso(started_before),
                ),
            )
            columns = [c[0] for c in cursor.description]
            failed = [self._row_to_record(dict(zip(columns, row))) for row in cursor.fetchall()]

            for record in failed:
                self._log_transition(
                    conn,
                    record.image_id,
                    JobStatus.PROCESSING,
                    JobStatus.FAILED,
                    error=error_message,
                )

        return failed

    def get_transitions(self, image_id: str) -> List[StateTransition]:
        with _sqlite_errors(f"transition read for {image_id}"):
            rows = list(
                self.db["state_transitions"].rows_where(
                    "image_id = ?", [image_id], order_by="id"
                )
            )
        return [
            StateTransition(
                image_id=row["image_id"],
                from_state=JobStatus(row["from_state"]) if row["from_state"] else None,
                to_state=JobStatus(row["to_state"]),
                timestamp=from_iso(row["timestamp"]),
                worker_id=row["worker_id"],
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    def list_records(self, status_filter: Optional[str] = None) -> List[ImageRecord]:
        with _sqlite_errors("record listing"):
            if status_filter:
                rows = list(
                    self.db["image_records"].rows_where(
                        "status = ?", [status_filter], order_by="uploaded_at"
                    )
                )
            else:
                rows = list(self.db["image_records"].rows_where(order_by="uploaded_at"))
        return [self._row_to_record(row) for row in rows]

    def _transition(
        self,
        image_id: str,
        to_state: JobStatus,
        assignments: Dict[str, object],
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Validate and apply one state change atomically."""
        try:
            with self.database.transaction() as conn:
                row = conn.execute(
                    "SELECT status FROM image_records WHERE image_id = ?", (image_id,)
                ).fetchone()
                if row is None:
                    raise RecordNotFound(f"Image record not found: {image_id}")

                current = JobStatus(row[0])
                if not can_transition(current, to_state):
                    raise InvalidTransition(image_id, current.value, to_state.value)

                values = dict(assignments, status=to_state.value)
                sets = ", ".join(f"{column} = ?" for column in values)
                conn.execute(
                    f"UPDATE image_records SET {sets} WHERE image_id = ?",
                    [*values.values(), image_id],
                )
                self._log_transition(conn, image_id, current, to_state, worker_id, error)
        except sqlite3.Error as e:
            raise QueueUnavailable(f"record update failed for {image_id}: {e}") from e

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        image_id: str,
        from_state: Optional[JobStatus],
        to_state: JobStatus,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        # Raw execute: sqlite-utils insert() would commit the open transaction
        conn.execute(
            """
            INSERT INTO state_transitions
                (image_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                image_id,
                from_state.value if from_state else None,
                to_state.value,
                to_iso(self._clock()),
                worker_id,
                error[:200] if error else None,
            ),
        )

    @staticmethod
    def _record_to_row(record: ImageRecord) -> Dict[str, object]:
        return {
            "image_id": record.image_id,
            "user_id": record.user_id,
            "original_name": record.original_name,
            "status": JobStatus(record.status).value,
            "job_id": record.job_id,
            "sizes": json.dumps({name: r.model_dump() for name, r in record.sizes.items()}),
            "uploaded_at": to_iso(record.uploaded_at),
            "started_at": to_iso(record.started_at) if record.started_at else None,
            "processed_at": to_iso(record.processed_at) if record.processed_at else None,
            "error_message": record.error_message,
        }

    @staticmethod
    def _row_to_record(row: Dict[str, object]) -> ImageRecord:
        sizes = json.loads(row["sizes"]) if row.get("sizes") else {}
        return ImageRecord(
            image_id=row["image_id"],
            user_id=row["user_id"],
            original_name=row["original_name"],
            status=JobStatus(row["status"]),
            job_id=row.get("job_id"),
            sizes={name: ResolutionResult(**value) for name, value in sizes.items()},
            uploaded_at=from_iso(row["uploaded_at"]),
            started_at=from_iso(row.get("started_at")),
            processed_at=from_iso(row.get("processed_at")),
            error_message=row.get("error_message"),
        )
