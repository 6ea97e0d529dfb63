import logging

from celery import Celery

from jobmaster.core.config import Settings

logger = logging.getLogger(__name__)


def get_celery_app(settings: Settings, name: str = "jobmaster") -> Celery:
    """
    Build a Celery app on the Redis broker.
    Tasks are not registered here; the worker subscribes its handler through
    CeleryQueueAdapter, and the API only ever calls send_task().
    """
    app = Celery(name, broker=settings.REDIS_URL, backend=settings.REDIS_URL)

    app.conf.update(
        result_expires=86400, # 24 hours
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # Don't ack until the handler returns; a lost worker means redelivery.
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        # One job in flight per worker process
        worker_concurrency=1,
        worker_prefetch_multiplier=1,
        # Give tasks 10 minutes before Redis considers them lost
        broker_transport_options={"visibility_timeout": 600},
        broker_connection_retry_on_startup=True,
    )

    # Early warning only: Celery itself reconnects once Redis is up.
    try:
        import redis
        client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        client.ping()
        logger.info(f"[Celery] Connected to Redis at {settings.REDIS_URL}")
    except Exception as e:
        logger.warning(f"[Celery] Redis not available at {settings.REDIS_URL} ({e}). Enqueues will fail until it is.")

    return app
