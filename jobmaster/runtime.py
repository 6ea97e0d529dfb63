"""
Explicit construction and teardown of the job subsystem.

The API process builds a JobServices container in its lifespan; the worker
process builds a WorkerRuntime. With QUEUE_BACKEND=memory the API process
also hosts the worker runtime and drains the queue itself.
"""
import logging
from typing import Optional

from jobmaster.core.celery_app import get_celery_app
from jobmaster.core.config import Settings
from jobmaster.db import Database
from jobmaster.services.estimation_worker import EstimationWorker
from jobmaster.services.job_service import JobServices, retry_policy_from
from jobmaster.services.job_store import JobStore
from jobmaster.services.queue import CeleryQueueAdapter, Delivery, InMemoryQueueAdapter, QueueAdapter
from jobmaster.services.upstream import PortfolioApiClient

logger = logging.getLogger(__name__)


class WorkerRuntime:
    """Owns the estimation worker's resources and subscribes it to the queue."""

    def __init__(self, settings: Settings, queue: QueueAdapter, db: Optional[Database] = None,
                 upstream: Optional[PortfolioApiClient] = None):
        self.settings = settings
        self.queue = queue
        self.db = db
        self.upstream = upstream
        self._owns_db = db is None
        self.worker: Optional[EstimationWorker] = None
        queue.subscribe(settings.ESTIMATION_TOPIC, self.handle, on_exhausted=self.on_exhausted)

    def start(self) -> None:
        if self.worker is not None:
            return
        if self.db is None:
            self.db = Database(self.settings.DATABASE_URL, self.settings.SQLITE_PATH)
            self.db.init_schema()
        if self.upstream is None:
            self.upstream = PortfolioApiClient(self.settings)
        self.worker = EstimationWorker(JobStore(self.db), self.upstream, self.settings)
        logger.info(f"Estimation worker started on topic '{self.settings.ESTIMATION_TOPIC}'")

    def stop(self) -> None:
        if self.worker is None:
            return
        logger.info("Closing estimation worker...")
        self.worker = None
        if self.upstream is not None:
            self.upstream.close()
            self.upstream = None
        if self.db is not None and self._owns_db:
            self.db.close()
            self.db = None

    def handle(self, delivery: Delivery) -> None:
        if self.worker is None:
            self.start()
        self.worker.handle(delivery)

    def on_exhausted(self, delivery: Delivery, exc: BaseException) -> None:
        logger.error(f"Job {delivery.payload.get('jobId')} failed permanently: {exc}")


def build_services(settings: Settings) -> JobServices:
    db = Database(settings.DATABASE_URL, settings.SQLITE_PATH)
    db.init_schema()
    policy = retry_policy_from(settings)

    if settings.QUEUE_BACKEND == "memory":
        logger.warning("QUEUE_BACKEND=memory: jobs are processed inside the API process.")
        queue = InMemoryQueueAdapter(default_policy=policy)
        runtime = WorkerRuntime(settings, queue, db=db)
        runtime.start()
        return JobServices(db, queue, settings, runtime=runtime)

    if settings.QUEUE_BACKEND != "celery":
        raise ValueError(f"Unknown QUEUE_BACKEND: {settings.QUEUE_BACKEND}")
    queue = CeleryQueueAdapter(get_celery_app(settings), default_policy=policy)
    return JobServices(db, queue, settings)
