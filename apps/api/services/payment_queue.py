"""Durable payment reconciliation queue helpers (Redis/RQ)."""

from __future__ import annotations

from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


PAYMENT_QUEUE_NAME = "payment_events"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_payment_queue() -> Queue:
    """Return the configured payment events queue."""
    return Queue(
        name=PAYMENT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_payment_event(payload: Dict[str, Any]) -> Job:
    """Enqueue a verified payment event with backoff retries."""
    queue = get_payment_queue()
    intervals = [max(int(seconds), 1) for seconds in settings.RECONCILE_RETRY_INTERVALS] or [60]
    return queue.enqueue(
        "services.payment_reconciliation.process_payment_event_job",
        payload,
        job_id=f"payment:{payload['payment_id']}",
        retry=Retry(max=len(intervals), interval=intervals),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )
