"""Durable feedback loop job queue helpers (Redis/RQ)."""

from __future__ import annotations

import uuid
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


FEEDBACK_QUEUE_NAME = "feedback_jobs"
FEEDBACK_JOB_TIMEOUT_SECONDS = 1800


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_feedback_queue() -> Queue:
    """Return the configured feedback loop queue."""
    return Queue(
        name=FEEDBACK_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=FEEDBACK_JOB_TIMEOUT_SECONDS,
    )


def enqueue_feedback_loop_job(limit: Optional[int] = None) -> Job:
    """Enqueue one feedback collection batch.

    Retries are safe for feedback records (upsert by post); a retried run only
    re-reads posts that are still uncollected.
    """
    run_id = str(uuid.uuid4())
    payload = {"limit": limit} if limit is not None else {}
    queue = get_feedback_queue()
    return queue.enqueue(
        "services.feedback_loop.run_feedback_loop_job",
        payload,
        run_id,
        job_id=f"feedback:{run_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=FEEDBACK_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )
