"""
Sync Job Queue

Producers (webhook ingestion, the renewal sweep, the IMAP monitor, manual
triggers) enqueue ``SyncJob``s; a bounded pool of workers runs them through
the sync engine with timeout, exponential-backoff retries and a dead-letter
set for jobs that exhaust their attempts.

Two backends share one interface:

- ``CelerySyncQueue``: durable, Redis-backed, used in production
- ``InlineSyncQueue``: in-process asyncio worker pool for single-process
  deployments and tests
"""

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set

import redis.asyncio as redis

from mailsync.config import settings
from mailsync.exceptions import EmailSyncError, RateLimitError
from mailsync.utils.datetime_utils import format_utc_iso, parse_iso, utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("sync_queue")

CELERY_SYNC_QUEUE = "email_sync"


@dataclass
class SyncJob:
    """One unit of sync work. Lives only in the queue."""
    account_id: str
    full_sync: bool = False
    message_hint: Optional[str] = None
    attempt: int = 0
    enqueued_at: datetime = field(default_factory=utc_now)
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "account_id": self.account_id,
            "full_sync": self.full_sync,
            "message_hint": self.message_hint,
            "attempt": self.attempt,
            "enqueued_at": format_utc_iso(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncJob":
        return cls(
            account_id=data["account_id"],
            full_sync=bool(data.get("full_sync", False)),
            message_hint=data.get("message_hint"),
            attempt=int(data.get("attempt", 0)),
            enqueued_at=parse_iso(data.get("enqueued_at")) or utc_now(),
            job_id=data.get("job_id") or str(uuid.uuid4()),
        )


@dataclass(frozen=True)
class JobPolicy:
    """Worker pool and retry policy."""
    concurrency: int = 5
    max_attempts: int = 3
    backoff_base: float = 1.0
    job_timeout: float = 60.0
    completed_retention_seconds: int = 3600
    completed_retention_count: int = 1000
    failed_retention_seconds: int = 86400

    @classmethod
    def from_settings(cls) -> "JobPolicy":
        return cls(
            concurrency=settings.sync_worker_concurrency,
            max_attempts=settings.sync_job_max_attempts,
            backoff_base=settings.sync_job_backoff_seconds,
            job_timeout=settings.sync_job_timeout_seconds,
            completed_retention_seconds=settings.sync_completed_retention_seconds,
            completed_retention_count=settings.sync_completed_retention_count,
            failed_retention_seconds=settings.sync_failed_retention_seconds,
        )

    def backoff_delay(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Delay before the retry that follows attempt number ``attempt`` (1-based)."""
        delay = self.backoff_base * (2 ** max(attempt - 1, 0))
        if isinstance(exc, RateLimitError) and exc.retry_after:
            delay = max(delay, exc.retry_after)
        return delay


def is_retryable(exc: BaseException) -> bool:
    """Authentication and validation failures need a human; everything else may heal."""
    if isinstance(exc, EmailSyncError):
        return exc.retryable
    return True


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "job timed out"
    return f"{type(exc).__name__}: {exc}"


SyncHandler = Callable[[SyncJob], Awaitable[Any]]


class SyncJobQueue(ABC):
    """Queue interface used by every producer."""

    @abstractmethod
    async def enqueue(self, job: SyncJob) -> str:
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def failed_jobs(self) -> List[Dict[str, Any]]:
        pass

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class InlineSyncQueue(SyncJobQueue):
    """In-process asyncio worker pool."""

    def __init__(self, handler: SyncHandler, policy: Optional[JobPolicy] = None):
        self.handler = handler
        self.policy = policy or JobPolicy.from_settings()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._delayed: Set[asyncio.Task] = set()
        self._completed: Deque[Dict[str, Any]] = deque()
        self._failed: List[Dict[str, Any]] = []
        self._active = 0
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"sync-worker-{index}")
            for index in range(self.policy.concurrency)
        ]
        logger.info(f"Inline sync queue started with {self.policy.concurrency} workers")

    async def stop(self) -> None:
        self._running = False
        tasks = self._workers + list(self._delayed)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._delayed.clear()
        logger.info("Inline sync queue stopped")

    async def enqueue(self, job: SyncJob) -> str:
        await self._queue.put(job)
        MetricsCollector.record_sync_job("enqueued")
        logger.debug(f"Enqueued sync job {job.job_id} for account {job.account_id}")
        return job.job_id

    async def drain(self) -> None:
        """Wait until no job is queued, running or waiting for a retry."""
        while True:
            await self._queue.join()
            if not self._delayed:
                return
            await asyncio.gather(*list(self._delayed), return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            self._active += 1
            try:
                await self._run(job)
            finally:
                self._active -= 1
                self._queue.task_done()

    async def _run(self, job: SyncJob) -> None:
        job.attempt += 1
        started = time.monotonic()
        try:
            # wait_for cancels the in-flight provider call on timeout
            result = await asyncio.wait_for(self.handler(job), timeout=self.policy.job_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._handle_failure(job, exc)
            return

        self._completed.append({
            "job": job.to_dict(),
            "status": "completed",
            "duration_seconds": round(time.monotonic() - started, 3),
            "finished_at": format_utc_iso(),
            "finished_ts": time.time(),
            "result": result.to_dict() if hasattr(result, "to_dict") else result,
        })
        self._trim()
        MetricsCollector.record_sync_job("completed")

    def _handle_failure(self, job: SyncJob, exc: Exception) -> None:
        reason = describe_error(exc)
        if is_retryable(exc) and job.attempt < self.policy.max_attempts:
            delay = self.policy.backoff_delay(job.attempt, exc)
            logger.warning(
                f"Sync job {job.job_id} for account {job.account_id} failed on attempt "
                f"{job.attempt}/{self.policy.max_attempts} ({reason}), retrying in {delay:.1f}s"
            )
            task = asyncio.create_task(self._requeue_later(job, delay))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            MetricsCollector.record_sync_job("retried")
            return

        logger.error(
            f"Sync job {job.job_id} for account {job.account_id} parked after "
            f"{job.attempt} attempt(s): {reason}"
        )
        self._failed.append({
            "job": job.to_dict(),
            "status": "failed",
            "error": reason,
            "retryable": is_retryable(exc),
            "failed_at": format_utc_iso(),
            "failed_ts": time.time(),
        })
        self._trim()
        MetricsCollector.record_sync_job("failed")

    async def _requeue_later(self, job: SyncJob, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._queue.put(job)

    def _trim(self) -> None:
        now = time.time()
        completed_cutoff = now - self.policy.completed_retention_seconds
        while self._completed and (
            len(self._completed) > self.policy.completed_retention_count
            or self._completed[0]["finished_ts"] < completed_cutoff
        ):
            self._completed.popleft()

        failed_cutoff = now - self.policy.failed_retention_seconds
        self._failed = [entry for entry in self._failed if entry["failed_ts"] >= failed_cutoff]

    async def stats(self) -> Dict[str, Any]:
        self._trim()
        return {
            "backend": "inline",
            "concurrency": self.policy.concurrency,
            "pending": self._queue.qsize(),
            "active": self._active,
            "delayed": len(self._delayed),
            "completed": len(self._completed),
            "failed": len(self._failed),
        }

    async def failed_jobs(self) -> List[Dict[str, Any]]:
        self._trim()
        return [{k: v for k, v in entry.items() if k != "failed_ts"} for entry in self._failed]


class CelerySyncQueue(SyncJobQueue):
    """
    Durable queue on Celery + Redis.

    Jobs run in ``sync_account_task`` workers; parked jobs are kept in a Redis
    sorted set scored by failure time.
    """

    def __init__(self, policy: Optional[JobPolicy] = None, redis_url: Optional[str] = None):
        self.policy = policy or JobPolicy.from_settings()
        self.redis_url = redis_url or settings.redis_url
        self.broker_url = settings.celery_broker_url
        self.dead_letter_key = settings.sync_dead_letter_key

    async def enqueue(self, job: SyncJob) -> str:
        from mailsync.tasks.email_sync_tasks import sync_account_task

        sync_account_task.apply_async(kwargs={"job": job.to_dict()}, task_id=job.job_id, queue=CELERY_SYNC_QUEUE)
        MetricsCollector.record_sync_job("enqueued")
        logger.debug(f"Enqueued sync job {job.job_id} for account {job.account_id} on Celery")
        return job.job_id

    async def stats(self) -> Dict[str, Any]:
        broker = redis.from_url(self.broker_url, decode_responses=True)
        results = redis.from_url(self.redis_url, decode_responses=True)
        try:
            pending = await broker.llen(CELERY_SYNC_QUEUE)
            failed = await results.zcount(self.dead_letter_key, time.time() - self.policy.failed_retention_seconds, "+inf")
        finally:
            await broker.close()
            await results.close()
        return {
            "backend": "celery",
            "concurrency": self.policy.concurrency,
            "pending": pending,
            "failed": failed,
        }

    async def failed_jobs(self) -> List[Dict[str, Any]]:
        client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            cutoff = time.time() - self.policy.failed_retention_seconds
            await client.zremrangebyscore(self.dead_letter_key, "-inf", cutoff)
            entries = await client.zrangebyscore(self.dead_letter_key, cutoff, "+inf")
        finally:
            await client.close()
        return [json.loads(entry) for entry in entries]


def build_sync_queue(handler: Optional[SyncHandler] = None, policy: Optional[JobPolicy] = None) -> SyncJobQueue:
    """Create the queue backend selected by ``SYNC_QUEUE_BACKEND``."""
    if settings.sync_queue_backend == "inline":
        if handler is None:
            raise ValueError("The inline sync queue needs a job handler")
        return InlineSyncQueue(handler, policy)
    return CelerySyncQueue(policy)
