"""
Celery entry point for the estimation worker.

    celery -A jobmaster.worker worker -P solo -c 1 --loglevel=INFO

The handler is subscribed at import (Celery needs the task registered
before it starts consuming). The runtime opens its database and HTTP client
on `worker_init` and closes them on `worker_shutdown`; a warm shutdown lets
the job in flight finish first.
"""
import logging
from typing import Optional

from celery import Celery
from celery.signals import worker_init, worker_shutdown

from jobmaster.core.celery_app import get_celery_app
from jobmaster.core.config import Settings, get_settings
from jobmaster.core.logging import setup_logging
from jobmaster.runtime import WorkerRuntime
from jobmaster.services.job_service import retry_policy_from
from jobmaster.services.queue import CeleryQueueAdapter

logger = logging.getLogger(__name__)


def create_worker_app(settings: Optional[Settings] = None) -> tuple[Celery, WorkerRuntime]:
    settings = settings or get_settings()
    app = get_celery_app(settings, name="jobmaster-worker")
    queue = CeleryQueueAdapter(app, default_policy=retry_policy_from(settings))
    return app, WorkerRuntime(settings, queue)


celery_app, runtime = create_worker_app()


@worker_init.connect
def _on_worker_init(**_):
    setup_logging(runtime.settings.LOG_LEVEL, runtime.settings.LOG_DIR)
    runtime.start()


@worker_shutdown.connect
def _on_worker_shutdown(**_):
    runtime.stop()
