import logging
from typing import Any, Dict, Optional

from jobmaster.core.config import Settings
from jobmaster.core.errors import NotFoundError, QueueUnavailableError, ValidationError
from jobmaster.db import Database
from jobmaster.services.job_store import Job, JobStore, JobType
from jobmaster.services.queue import QueueAdapter, RetryPolicy

logger = logging.getLogger(__name__)


def retry_policy_from(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        backoff_delay=settings.QUEUE_BACKOFF_DELAY,
        backoff_type=settings.QUEUE_BACKOFF_TYPE,
    )


class JobSubmissionService:
    def __init__(self, store: JobStore, queue: QueueAdapter, topic: str, policy: RetryPolicy):
        self.store = store
        self.queue = queue
        self.topic = topic
        self.policy = policy

    @staticmethod
    def validate(job_type: Optional[str], data: Optional[Dict[str, Any]]) -> JobType:
        if not job_type or data is None:
            raise ValidationError("Both 'type' and 'data' are required")
        if job_type != JobType.ESTIMATE_GAINS.value:
            raise ValidationError(f"Unsupported job type: {job_type}")
        if not isinstance(data, dict):
            raise ValidationError("'data' must be an object")
        user_email = data.get("userEmail")
        if not isinstance(user_email, str) or not user_email.strip():
            raise ValidationError("data.userEmail is required")
        return JobType(job_type)

    async def submit(self, job_type: Optional[str], data: Optional[Dict[str, Any]]) -> str:
        """
        Persist a PENDING job and queue it. Returns the new jobId.
        If the queue refuses the message the record is closed as FAILED
        rather than left PENDING with nothing to process it.
        """
        kind = self.validate(job_type, data)
        job = await self.store.create_job_async(kind, data)

        try:
            self.queue.enqueue(self.topic, {**data, "jobId": job.job_id}, self.policy)
        except QueueUnavailableError as e:
            await self.store.fail_job_async(job.job_id, f"Job could not be queued: {e}")
            raise

        logger.info(f"Job {job.job_id} queued for {data['userEmail']}")
        return job.job_id


class JobQueryService:
    def __init__(self, store: JobStore):
        self.store = store

    async def get_status(self, job_id: str) -> Job:
        job = await self.store.get_job_async(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job


class JobServices:
    """
    Everything the API needs, built once at startup and torn down at shutdown.
    """

    def __init__(self, db: Database, queue: QueueAdapter, settings: Settings, runtime=None):
        self.db = db
        self.queue = queue
        self.runtime = runtime
        self.store = JobStore(db)
        self.submission = JobSubmissionService(
            self.store, queue, settings.ESTIMATION_TOPIC, retry_policy_from(settings)
        )
        self.query = JobQueryService(self.store)
        # Set only for queues that are drained in-process
        self.drain = getattr(queue, "drain", None)

    async def aclose(self) -> None:
        if self.runtime is not None:
            self.runtime.stop()
        self.queue.close()
        await self.db.aclose()
        self.db.close()
