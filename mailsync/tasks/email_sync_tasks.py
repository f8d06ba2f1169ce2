"""
Email Synchronization Celery Tasks

Durable execution of sync jobs and the periodic subscription renewal sweep.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict

import redis
from celery import Task

from mailsync.celery_app import celery_app
from mailsync.config import settings
from mailsync.db.database import dispose_engine
from mailsync.services.connection_managers import ConnectionManagerRegistry
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_sync_service import EmailSyncService, SyncResult
from mailsync.services.event_publisher import RedisStreamEventPublisher
from mailsync.services.sql_stores import SqlAccountStore, SqlMessageStore
from mailsync.services.subscription_renewal_service import SubscriptionRenewalService
from mailsync.services.sync_queue import CELERY_SYNC_QUEUE, JobPolicy, SyncJob, describe_error, is_retryable
from mailsync.utils.datetime_utils import format_utc_iso
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("email_sync_tasks")

policy = JobPolicy.from_settings()


class EmailSyncTask(Task):
    """Base class for email sync tasks: parks exhausted jobs in the dead-letter set."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Called when task fails."""
        logger.error(f"Email sync task {task_id} failed: {describe_error(exc)}")
        job = (kwargs or {}).get("job")
        if job is None:
            return

        entry = {
            "job": dict(job, attempt=self.request.retries + 1),
            "status": "failed",
            "error": describe_error(exc),
            "retryable": is_retryable(exc),
            "failed_at": format_utc_iso(),
        }
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        try:
            now = time.time()
            client.zadd(settings.sync_dead_letter_key, {json.dumps(entry): now})
            client.zremrangebyscore(settings.sync_dead_letter_key, "-inf", now - policy.failed_retention_seconds)
        except redis.RedisError as e:
            logger.error(f"Could not record dead-lettered job {task_id}: {e}")
        finally:
            client.close()
        MetricsCollector.record_sync_job("failed")

    def on_success(self, retval, task_id, args, kwargs):
        """Called when task succeeds."""
        logger.info(f"Email sync task {task_id} completed successfully")
        if self.name == sync_account_task.name:
            MetricsCollector.record_sync_job("completed")


def _run_in_new_loop(factory: Callable[[], Awaitable[Any]]) -> Any:
    """Run a coroutine in an isolated event loop, disposing the DB pool bound to it."""
    async def _with_cleanup():
        try:
            return await factory()
        finally:
            await dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_with_cleanup())
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.close()
            asyncio.set_event_loop(None)


async def _sync(job: SyncJob) -> SyncResult:
    publisher = RedisStreamEventPublisher()
    await publisher.connect()
    try:
        service = EmailSyncService(SqlAccountStore(), SqlMessageStore(), publisher)
        return await asyncio.wait_for(
            service.sync_account(job.account_id, job.full_sync, job.message_hint),
            timeout=policy.job_timeout,
        )
    finally:
        await publisher.disconnect()


@celery_app.task(
    base=EmailSyncTask,
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    max_retries=max(policy.max_attempts - 1, 0),
)
def sync_account_task(self, job: Dict[str, Any]):
    """
    Run one sync job.

    Args:
        job: ``SyncJob.to_dict()`` payload
    """
    sync_job = SyncJob.from_dict(job)
    sync_job.attempt = self.request.retries + 1
    try:
        result = _run_in_new_loop(lambda: _sync(sync_job))
    except Exception as exc:
        if is_retryable(exc) and self.request.retries < self.max_retries:
            countdown = policy.backoff_delay(sync_job.attempt, exc)
            logger.warning(
                f"Sync job {sync_job.job_id} for account {sync_job.account_id} failed on attempt "
                f"{sync_job.attempt}/{policy.max_attempts} ({describe_error(exc)}), retrying in {countdown:.1f}s"
            )
            MetricsCollector.record_sync_job("retried")
            raise self.retry(countdown=countdown, exc=exc)
        raise

    if result.needs_follow_up:
        follow_up = SyncJob(account_id=sync_job.account_id)
        logger.info(f"Listing for account {sync_job.account_id} was cut off, queued follow-up job {follow_up.job_id}")
        sync_account_task.apply_async(kwargs={"job": follow_up.to_dict()}, task_id=follow_up.job_id, queue=CELERY_SYNC_QUEUE)
    return result.to_dict()


@celery_app.task(
    base=EmailSyncTask,
    bind=True,
    time_limit=settings.renewal_task_time_limit_seconds,
    soft_time_limit=max(settings.renewal_task_time_limit_seconds - 60, 1),
)
def renew_subscriptions_task(self):
    """Daily sweep that renews push subscriptions nearing expiry."""
    async def _sweep():
        cipher = CredentialCipher()
        service = SubscriptionRenewalService(SqlAccountStore(), ConnectionManagerRegistry.default(cipher))
        summary = await service.sweep()
        return summary.to_dict()

    return _run_in_new_loop(_sweep)
