"""
Service wiring for the API process and the Celery workers.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from mailsync.config import settings
from mailsync.services.account_connection_service import AccountConnectionService
from mailsync.services.connection_managers import ConnectionManagerRegistry
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors import ConnectorFactory
from mailsync.services.email_sync_service import EmailSyncService
from mailsync.services.event_publisher import RedisStreamEventPublisher
from mailsync.services.imap_idle_monitor import ImapIdleMonitor
from mailsync.services.message_content_service import MessageContentService, RedisContentCache
from mailsync.services.sql_stores import SqlAccountStore, SqlMessageStore
from mailsync.services.stores import AccountStore, EventPublisher, MessageStore
from mailsync.services.subscription_renewal_service import SubscriptionRenewalService
from mailsync.services.sync_queue import InlineSyncQueue, JobPolicy, SyncJob, SyncJobQueue, build_sync_queue
from mailsync.services.webhook_ingestion_service import WebhookIngestionService
from mailsync.utils.logging import get_logger

logger = get_logger("services")


@dataclass
class EmailServices:
    account_store: AccountStore
    message_store: MessageStore
    publisher: EventPublisher
    cipher: CredentialCipher
    connectors: ConnectorFactory
    managers: ConnectionManagerRegistry
    sync_service: EmailSyncService
    queue: SyncJobQueue
    idle_monitor: ImapIdleMonitor
    connections: AccountConnectionService
    webhooks: WebhookIngestionService
    renewals: SubscriptionRenewalService
    messages: MessageContentService
    # Seconds between in-process renewal sweeps; None when Celery Beat schedules them
    renewal_interval: Optional[float] = None
    _renewal_task: Optional[asyncio.Task] = field(default=None, init=False, repr=False)

    async def start(self) -> None:
        if isinstance(self.publisher, RedisStreamEventPublisher):
            await self.publisher.connect()
        await self.queue.start()
        if self.renewal_interval:
            self._renewal_task = asyncio.create_task(self._renewal_loop())

    async def stop(self) -> None:
        if self._renewal_task is not None:
            self._renewal_task.cancel()
            await asyncio.gather(self._renewal_task, return_exceptions=True)
            self._renewal_task = None
        await self.idle_monitor.stop_all()
        await self.queue.stop()
        if isinstance(self.messages.cache, RedisContentCache):
            await self.messages.cache.close()
        if isinstance(self.publisher, RedisStreamEventPublisher):
            await self.publisher.disconnect()

    async def _renewal_loop(self) -> None:
        logger.info(f"In-process subscription renewal every {self.renewal_interval}s")
        while True:
            try:
                await self.renewals.sweep()
            except Exception as e:
                logger.error(f"Subscription renewal sweep failed: {e}")
            await asyncio.sleep(self.renewal_interval)


def build_email_services(
    account_store: Optional[AccountStore] = None,
    message_store: Optional[MessageStore] = None,
    publisher: Optional[EventPublisher] = None,
    cipher: Optional[CredentialCipher] = None,
    connectors: Optional[ConnectorFactory] = None,
    managers: Optional[ConnectionManagerRegistry] = None,
    queue: Optional[SyncJobQueue] = None,
    policy: Optional[JobPolicy] = None,
    content_cache=None,
    renewal_interval: Optional[float] = None,
) -> EmailServices:
    """Assemble the service graph; any collaborator can be swapped out."""
    account_store = account_store or SqlAccountStore()
    message_store = message_store or SqlMessageStore()
    publisher = publisher or RedisStreamEventPublisher()
    cipher = cipher or CredentialCipher()
    connectors = connectors or ConnectorFactory()
    managers = managers or ConnectionManagerRegistry.default(cipher)
    content_cache = content_cache or RedisContentCache()

    sync_service = EmailSyncService(account_store, message_store, publisher, connectors, cipher)

    async def run_job(job: SyncJob):
        result = await sync_service.sync_account(job.account_id, job.full_sync, job.message_hint)
        if result.needs_follow_up:
            follow_up = SyncJob(account_id=job.account_id)
            logger.info(f"Listing for account {job.account_id} was cut off, queued follow-up job {follow_up.job_id}")
            await queue.enqueue(follow_up)
        return result

    queue = queue or build_sync_queue(run_job, policy)
    idle_monitor = ImapIdleMonitor(queue, cipher)

    # Without Celery Beat nothing else schedules the renewal sweep
    if renewal_interval is None and isinstance(queue, InlineSyncQueue):
        renewal_interval = settings.renewal_interval_seconds

    logger.debug(f"Email services assembled with {type(queue).__name__} ({settings.sync_queue_backend})")
    return EmailServices(
        account_store=account_store,
        message_store=message_store,
        publisher=publisher,
        cipher=cipher,
        connectors=connectors,
        managers=managers,
        sync_service=sync_service,
        queue=queue,
        idle_monitor=idle_monitor,
        connections=AccountConnectionService(account_store, managers, queue, cipher, idle_monitor),
        webhooks=WebhookIngestionService(account_store, queue),
        renewals=SubscriptionRenewalService(account_store, managers),
        messages=MessageContentService(account_store, connectors, cipher, content_cache),
        renewal_interval=renewal_interval,
    )
