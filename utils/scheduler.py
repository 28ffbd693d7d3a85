"""
Delay Scheduler - durable, time-ordered job queue backed by SQLite.

Jobs are referenced by a caller-chosen job_id and carry a small payload that
points at a record by ID. A single handler consumes them once their delay has
elapsed; failed attempts are retried with exponential backoff up to a cap and
then parked as 'failed' for an operator to inspect or retry.

The queue survives restarts: jobs that were mid-flight when the process died
are put back to 'waiting' on init, so every job runs at least once.
"""
import aiosqlite
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger('TokenArena.Scheduler')

MAX_ATTEMPTS = 3
BACKOFF_BASE_MS = 1000
DB_TIMEOUT = 10.0


class JobKind(str, Enum):
    PREDICTION_RESOLVE = 'prediction_resolve'
    BATTLE_CHECK = 'battle_check'
    BATTLE_EXPIRE = 'battle_expire'


class JobState(str, Enum):
    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'


@dataclass(frozen=True)
class JobPayload:
    kind: JobKind
    record_id: str


@dataclass
class ScheduledJob:
    job_id: str
    payload: JobPayload
    not_before: float
    attempt: int
    state: JobState
    last_error: Optional[str] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None


JobHandler = Callable[[JobPayload], Awaitable[Optional[bool]]]


class DelayScheduler:
    """Durable delayed-job queue with at-least-once delivery."""

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time,
                 max_attempts: int = MAX_ATTEMPTS, backoff_base_ms: int = BACKOFF_BASE_MS):
        self.db_path = db_path
        self.clock = clock
        self.max_attempts = max_attempts
        self.backoff_base_ms = backoff_base_ms
        self._handler: Optional[JobHandler] = None

    def _connect(self):
        return aiosqlite.connect(self.db_path, timeout=DB_TIMEOUT)

    async def init(self):
        """Create the jobs table and recover jobs orphaned by a previous process."""
        async with self._connect() as db:
            await db.execute('''
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                    job_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    not_before REAL NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    state TEXT NOT NULL DEFAULT 'waiting',
                    last_error TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            ''')
            await db.execute('''
                CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_due
                ON scheduled_jobs (state, not_before)
            ''')
            cursor = await db.execute('''
                UPDATE scheduled_jobs SET state = ?, updated_at = ?
                WHERE state = ?
            ''', (JobState.WAITING.value, self.clock(), JobState.ACTIVE.value))
            recovered = cursor.rowcount
            await db.commit()
        if recovered:
            logger.warning(f"Recovered {recovered} job(s) left active by a previous run")
        logger.info("Scheduler ready")

    def on_fire(self, handler: JobHandler):
        """Register the single consumer of due jobs."""
        if self._handler is not None and self._handler != handler:
            raise RuntimeError("A different job handler is already registered")
        self._handler = handler

    async def schedule(self, job_id: str, payload: JobPayload, delay_ms: int) -> bool:
        """
        Queue payload to run no earlier than delay_ms from now.

        Returns False without queueing anything when the deadline has already
        passed (delay_ms < 0) or when job_id is already known.
        """
        if delay_ms < 0:
            logger.warning(f"Job {job_id} has already expired ({delay_ms}ms), not scheduling")
            return False

        now = self.clock()
        async with self._connect() as db:
            cursor = await db.execute('''
                INSERT OR IGNORE INTO scheduled_jobs
                    (job_id, kind, record_id, not_before, attempt, state, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
            ''', (job_id, payload.kind.value, payload.record_id, now + delay_ms / 1000,
                  JobState.WAITING.value, now, now))
            accepted = cursor.rowcount == 1
            await db.commit()

        if accepted:
            logger.info(f"Scheduled {payload.kind.value} job {job_id} with delay {delay_ms}ms")
        else:
            logger.info(f"Job {job_id} already queued, skipping duplicate")
        return accepted

    async def run_due(self, limit: int = 50) -> int:
        """Run every job whose deadline has passed. Returns how many were run."""
        if self._handler is None:
            logger.warning("No job handler registered, skipping run")
            return 0

        now = self.clock()
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute('''
                SELECT * FROM scheduled_jobs
                WHERE state = ? AND not_before <= ?
                ORDER BY not_before ASC
                LIMIT ?
            ''', (JobState.WAITING.value, now, limit))
            rows = await cursor.fetchall()

            claimed = []
            for row in rows:
                cursor = await db.execute('''
                    UPDATE scheduled_jobs SET state = ?, attempt = attempt + 1, updated_at = ?
                    WHERE job_id = ? AND state = ?
                ''', (JobState.ACTIVE.value, now, row['job_id'], JobState.WAITING.value))
                if cursor.rowcount == 1:
                    job = self._row_to_job(row)
                    job.attempt += 1
                    job.state = JobState.ACTIVE
                    claimed.append(job)
            await db.commit()

        if claimed:
            await asyncio.gather(*(self._execute(job) for job in claimed))
        return len(claimed)

    async def _execute(self, job: ScheduledJob):
        try:
            result = await self._handler(job.payload)
            if result is False:
                raise RuntimeError("handler reported failure")
        except Exception as e:
            await self._record_failure(job, e)
            return

        async with self._connect() as db:
            await db.execute('''
                UPDATE scheduled_jobs SET state = ?, last_error = NULL, updated_at = ?
                WHERE job_id = ?
            ''', (JobState.COMPLETED.value, self.clock(), job.job_id))
            await db.commit()
        logger.info(f"Job {job.job_id} completed for {job.payload.kind.value} {job.payload.record_id}")

    async def _record_failure(self, job: ScheduledJob, error: Exception):
        now = self.clock()
        reason = f"{type(error).__name__}: {error}"

        if job.attempt >= self.max_attempts:
            state = JobState.FAILED
            not_before = job.not_before
            logger.error(f"Job {job.job_id} failed permanently after {job.attempt} attempt(s): {reason}")
        else:
            state = JobState.WAITING
            backoff_ms = self.backoff_base_ms * (2 ** (job.attempt - 1))
            not_before = now + backoff_ms / 1000
            logger.warning(
                f"Job {job.job_id} attempt {job.attempt}/{self.max_attempts} failed: {reason}. "
                f"Retrying in {backoff_ms}ms"
            )

        async with self._connect() as db:
            await db.execute('''
                UPDATE scheduled_jobs SET state = ?, not_before = ?, last_error = ?, updated_at = ?
                WHERE job_id = ?
            ''', (state.value, not_before, reason, now, job.job_id))
            await db.commit()

    # ==================== ADMINISTRATION ====================

    @staticmethod
    def _row_to_job(row) -> ScheduledJob:
        return ScheduledJob(
            job_id=row['job_id'],
            payload=JobPayload(JobKind(row['kind']), row['record_id']),
            not_before=row['not_before'],
            attempt=row['attempt'],
            state=JobState(row['state']),
            last_error=row['last_error'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
        )

    async def get_stats(self) -> Dict[str, int]:
        """Job counts per state."""
        stats = {state.value: 0 for state in JobState}
        async with self._connect() as db:
            cursor = await db.execute('SELECT state, COUNT(*) FROM scheduled_jobs GROUP BY state')
            for state, count in await cursor.fetchall():
                stats[state] = count
        return stats

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute('SELECT * FROM scheduled_jobs WHERE job_id = ?', (job_id,))
            row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def get_failed_jobs(self, limit: int = 25) -> List[ScheduledJob]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute('''
                SELECT * FROM scheduled_jobs WHERE state = ?
                ORDER BY updated_at DESC LIMIT ?
            ''', (JobState.FAILED.value, limit))
            rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def retry_failed_job(self, job_id: str) -> bool:
        """Put a failed job back in the queue with a fresh attempt budget."""
        now = self.clock()
        async with self._connect() as db:
            cursor = await db.execute('''
                UPDATE scheduled_jobs SET state = ?, attempt = 0, not_before = ?, updated_at = ?
                WHERE job_id = ? AND state = ?
            ''', (JobState.WAITING.value, now, now, job_id, JobState.FAILED.value))
            retried = cursor.rowcount == 1
            await db.commit()
        if retried:
            logger.info(f"Re-queued failed job {job_id}")
        return retried

    async def purge_all(self) -> int:
        """Remove every job regardless of state."""
        async with self._connect() as db:
            cursor = await db.execute('DELETE FROM scheduled_jobs')
            removed = cursor.rowcount
            await db.commit()
        logger.warning(f"Purged {removed} job(s) from the queue")
        return removed
