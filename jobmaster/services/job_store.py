import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from jobmaster.db import Database
from jobmaster.utils.time import utc_now

logger = logging.getLogger(__name__)


class JobType(str, Enum):
    ESTIMATE_GAINS = "ESTIMATE_GAINS"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)
# States a job may be in right before entering PROCESSING or a terminal state
OPEN_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


@dataclass
class Job:
    job_id: str
    type: JobType
    status: JobStatus
    data: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_view(self) -> Dict[str, Any]:
        """Public projection of the record (what GET /job/{id} returns)."""
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


def _row_to_job(row: Any) -> Job:
    return Job(
        job_id=row["job_id"],
        type=JobType(row["type"]),
        status=JobStatus(row["status"]),
        data=json.loads(row["data"]) if row["data"] else {},
        result=json.loads(row["result"]) if row["result"] else None,
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        version=row["version"] or 0,
    )


_INSERT = """
    INSERT INTO jobs (job_id, type, status, data, created_at, updated_at, version)
    VALUES (?, ?, ?, ?, ?, ?, 1)
"""
_SELECT = "SELECT * FROM jobs WHERE job_id = ?"
_OPEN_GUARD = "status IN (?, ?)"


class JobStore:
    """
    Persistence for job records.
    Async methods serve FastAPI, sync methods serve the Celery worker.

    Every status change is a conditional UPDATE guarded on the current status,
    so a record never moves backwards (COMPLETED/FAILED are final).
    """

    def __init__(self, db: Database):
        self.db = db

    # ─── ASYNC METHODS (For FastAPI) ─────────────────────────────────────────

    async def create_job_async(self, job_type: JobType, data: Dict[str, Any]) -> Job:
        job = self._new_job(job_type, data)
        async with self.db.aconnect() as conn:
            await conn.execute(_INSERT, self._insert_args(job))
            await conn.commit()
        logger.info(f"Job {job.job_id} created ({job_type.value}).")
        return job

    async def get_job_async(self, job_id: str) -> Optional[Job]:
        async with self.db.aconnect() as conn:
            cursor = await conn.execute(_SELECT, (job_id,))
            row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def fail_job_async(self, job_id: str, error_msg: str) -> None:
        now = utc_now()
        async with self.db.aconnect() as conn:
            await conn.execute(
                f"""
                UPDATE jobs
                SET status = ?, error = ?, completed_at = ?, updated_at = ?, version = version + 1
                WHERE job_id = ? AND {_OPEN_GUARD}
                """,
                (JobStatus.FAILED.value, error_msg, now, now, job_id, *[s.value for s in OPEN_STATUSES]),
            )
            await conn.commit()
        logger.error(f"Job {job_id} marked as FAILED: {error_msg}")

    # ─── SYNC METHODS (Celery worker) ────────────────────────────────────────

    def create_job(self, job_type: JobType, data: Dict[str, Any]) -> Job:
        job = self._new_job(job_type, data)
        with self.db.connect() as conn:
            conn.execute(_INSERT, self._insert_args(job))
            conn.commit()
        logger.info(f"Job {job.job_id} created ({job_type.value}).")
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.db.connect() as conn:
            row = conn.execute(_SELECT, (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def mark_processing(self, job_id: str) -> bool:
        """PENDING/PROCESSING -> PROCESSING. Returns False if the job is missing or already final."""
        return self._transition(
            job_id,
            "status = ?",
            (JobStatus.PROCESSING.value,),
        )

    def complete_job(self, job_id: str, result: Dict[str, Any]) -> bool:
        now = utc_now()
        applied = self._transition(
            job_id,
            "status = ?, result = ?, error = NULL, completed_at = ?",
            (JobStatus.COMPLETED.value, json.dumps(result), now),
        )
        if applied:
            logger.info(f"Job {job_id} marked as COMPLETED.")
        return applied

    def fail_job(self, job_id: str, error_msg: str) -> bool:
        now = utc_now()
        applied = self._transition(
            job_id,
            "status = ?, error = ?, result = NULL, completed_at = ?",
            (JobStatus.FAILED.value, error_msg, now),
        )
        if applied:
            logger.error(f"Job {job_id} marked as FAILED: {error_msg}")
        return applied

    # ─── Helpers ─────────────────────────────────────────────────────────────

    def _transition(self, job_id: str, assignments: str, values: tuple) -> bool:
        with self.db.connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET {assignments}, updated_at = ?, version = version + 1
                WHERE job_id = ? AND {_OPEN_GUARD}
                """,
                (*values, utc_now(), job_id, *[s.value for s in OPEN_STATUSES]),
            )
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _new_job(job_type: JobType, data: Dict[str, Any]) -> Job:
        now = utc_now()
        return Job(
            job_id=str(uuid.uuid4()),
            type=job_type,
            status=JobStatus.PENDING,
            data=dict(data),
            created_at=now,
            updated_at=now,
            version=1,
        )

    @staticmethod
    def _insert_args(job: Job) -> tuple:
        return (
            job.job_id,
            job.type.value,
            job.status.value,
            json.dumps(job.data),
            job.created_at,
            job.updated_at,
        )
