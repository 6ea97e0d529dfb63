"""
queue.py
~~~~~~~~
Queue adapters: at-least-once delivery with bounded, backed-off retries.

`CeleryQueueAdapter` talks to a real broker (Redis); `InMemoryQueueAdapter`
delivers inside the current process and is meant for development and tests.
Both hand each message to the subscribed handler as a `Delivery`.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from celery import Celery

from jobmaster.core.errors import QueueUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_delay: float = 2.0  # seconds before the 2nd attempt
    backoff_type: str = "exponential"  # or "fixed"

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        if self.backoff_type == "fixed":
            return self.backoff_delay
        return self.backoff_delay * (2 ** (attempt - 1))


@dataclass
class Delivery:
    topic: str
    payload: Dict[str, Any]
    message_id: str
    attempt: int = 1
    max_attempts: int = 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


Handler = Callable[[Delivery], None]
ExhaustedCallback = Callable[[Delivery, BaseException], None]


class QueueAdapter(Protocol):
    def enqueue(self, topic: str, payload: Dict[str, Any], policy: Optional[RetryPolicy] = None) -> str:
        """Put one message; returns message_id. Raise QueueUnavailableError."""
        ...

    def subscribe(self, topic: str, handler: Handler, on_exhausted: Optional[ExhaustedCallback] = None) -> None:
        """Register the single consumer for `topic`."""
        ...

    def close(self) -> None:
        ...


def _log_exhausted(delivery: Delivery, exc: BaseException) -> None:
    logger.error(
        f"Message {delivery.message_id} on '{delivery.topic}' failed after "
        f"{delivery.attempt} attempt(s): {exc}"
    )


# ─── In-Memory ───────────────────────────────────────────────────────────────
class InMemoryQueueAdapter:
    """
    FIFO queue drained synchronously by `drain()`.
    Only one drain runs at a time, so at most one message is in flight.
    """

    def __init__(self, default_policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep):
        self.default_policy = default_policy or RetryPolicy()
        self._sleep = sleep
        self._queue: deque[tuple[Delivery, RetryPolicy]] = deque()
        self._handlers: Dict[str, tuple[Handler, Optional[ExhaustedCallback]]] = {}
        self._drain_lock = threading.Lock()
        self._closed = False

    def enqueue(self, topic: str, payload: Dict[str, Any], policy: Optional[RetryPolicy] = None) -> str:
        if self._closed:
            raise QueueUnavailableError("queue is closed")
        policy = policy or self.default_policy
        message_id = uuid.uuid4().hex
        delivery = Delivery(topic, dict(payload), message_id, attempt=1, max_attempts=policy.max_attempts)
        self._queue.append((delivery, policy))
        logger.info(f"Enqueued {message_id} on '{topic}'")
        return message_id

    def subscribe(self, topic: str, handler: Handler, on_exhausted: Optional[ExhaustedCallback] = None) -> None:
        self._handlers[topic] = (handler, on_exhausted)

    def pending(self) -> int:
        return len(self._queue)

    def drain(self) -> int:
        """Deliver queued messages until the queue is empty. Returns how many were handled."""
        handled = 0
        while self._queue:
            if not self._drain_lock.acquire(blocking=False):
                return handled  # another drain owns the queue
            try:
                while self._queue:
                    delivery, policy = self._queue.popleft()
                    self._deliver(delivery, policy)
                    handled += 1
            finally:
                self._drain_lock.release()
        return handled

    def _deliver(self, delivery: Delivery, policy: RetryPolicy) -> None:
        entry = self._handlers.get(delivery.topic)
        if entry is None:
            logger.warning(f"No subscriber for '{delivery.topic}', dropping {delivery.message_id}")
            return
        handler, on_exhausted = entry

        while True:
            try:
                handler(delivery)
                return
            except Exception as exc:
                if delivery.is_final_attempt:
                    _log_exhausted(delivery, exc)
                    if on_exhausted:
                        on_exhausted(delivery, exc)
                    return
                delay = policy.delay_for(delivery.attempt)
                logger.warning(
                    f"Attempt {delivery.attempt}/{delivery.max_attempts} of {delivery.message_id} "
                    f"failed ({exc}); retrying in {delay:.1f}s"
                )
                self._sleep(delay)
                delivery.attempt += 1

    def close(self) -> None:
        self._closed = True


# ─── Celery ──────────────────────────────────────────────────────────────────
class CeleryQueueAdapter:
    """
    Topics map to Celery task names. The retry policy travels with each
    message as task kwargs so the consumer side needs no shared config.
    """

    def __init__(self, app: Celery, default_policy: Optional[RetryPolicy] = None):
        self.app = app
        self.default_policy = default_policy or RetryPolicy()

    def enqueue(self, topic: str, payload: Dict[str, Any], policy: Optional[RetryPolicy] = None) -> str:
        policy = policy or self.default_policy
        try:
            result = self.app.send_task(
                topic,
                kwargs={
                    "payload": payload,
                    "max_attempts": policy.max_attempts,
                    "backoff_delay": policy.backoff_delay,
                    "backoff_type": policy.backoff_type,
                },
            )
        except Exception as e:
            logger.error(f"Enqueue on '{topic}' failed: {e}")
            raise QueueUnavailableError(f"Broker unavailable: {e}") from e
        logger.info(f"Enqueued {result.id} on '{topic}'")
        return result.id

    def subscribe(self, topic: str, handler: Handler, on_exhausted: Optional[ExhaustedCallback] = None):
        @self.app.task(bind=True, name=topic, acks_late=True)
        def consume(task, payload: Dict[str, Any], max_attempts: int = 3,
                    backoff_delay: float = 2.0, backoff_type: str = "exponential"):
            delivery = Delivery(
                topic=topic,
                payload=payload,
                message_id=task.request.id,
                attempt=task.request.retries + 1,
                max_attempts=max_attempts,
            )
            try:
                handler(delivery)
            except Exception as exc:
                if delivery.is_final_attempt:
                    _log_exhausted(delivery, exc)
                    if on_exhausted:
                        on_exhausted(delivery, exc)
                    raise
                policy = RetryPolicy(max_attempts, backoff_delay, backoff_type)
                countdown = policy.delay_for(delivery.attempt)
                logger.warning(
                    f"Attempt {delivery.attempt}/{max_attempts} of {delivery.message_id} "
                    f"failed ({exc}); retrying in {countdown:.1f}s"
                )
                raise task.retry(exc=exc, countdown=countdown, max_retries=max_attempts - 1)

        return consume

    def close(self) -> None:
        self.app.close()
