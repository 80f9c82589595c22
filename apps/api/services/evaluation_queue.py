"""AI evaluation job queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_evaluation_queue() -> Queue:
    """Return the configured AI evaluation queue."""
    return Queue(
        name=settings.AI_EVALUATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def enqueue_ai_evaluation(submission_id: str, trainer_id: str) -> Job:
    """Hand a paid submission to the AI evaluation workers.

    The ledger never waits on this job; one job per submission.
    """
    queue = get_evaluation_queue()
    return queue.enqueue(
        settings.AI_EVALUATION_JOB_PATH,
        submission_id=submission_id,
        trainer_id=trainer_id,
        job_id=f"ai-evaluation:{submission_id}",
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )
