"""
IMAP Idle Monitor

Keeps one long-lived task per IMAP account. Servers advertising IDLE get a
dedicated imapclient connection parked in IDLE; every (re)connect and any
EXISTS/RECENT response enqueues a sync job. Servers without IDLE are polled on
a fixed interval, starting with an immediate sync.

A dropped connection is retried from inside the same task after a delay, so
each account has at most one reconnect pending.
"""

import asyncio
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError

from mailsync.config import settings
from mailsync.exceptions import AuthenticationError, ExternalServiceError, ValidationError
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.imap_connector import ImapSettings
from mailsync.services.email_models import Account, PollSession, ProviderKind
from mailsync.services.sync_queue import SyncJob, SyncJobQueue
from mailsync.utils.datetime_utils import format_utc_iso, utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("imap_idle_monitor")

NEW_MAIL_RESPONSES = (b"EXISTS", b"RECENT")


class MonitorState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    POLLING = "polling"
    STOPPED = "stopped"


def open_idle_client(credentials: Dict[str, Any]) -> IMAPClient:
    """
    Open an authenticated imapclient connection for IDLE.

    Raises:
        AuthenticationError: Login rejected
        ExternalServiceError: Server unreachable
    """
    params = ImapSettings(credentials)
    try:
        client = IMAPClient(params.host, port=params.port, ssl=params.use_ssl, timeout=settings.imap_timeout)
        if not params.use_ssl:
            client.starttls(ssl.create_default_context())
    except (OSError, IMAPClientError) as e:
        raise ExternalServiceError(f"Cannot reach IMAP server {params.host}:{params.port}: {e}")

    try:
        client.login(params.username, params.password)
    except LoginError as e:
        _logout(client)
        raise AuthenticationError(f"IMAP login rejected for {params.username}: {e}")
    return client


def _logout(client: Optional[IMAPClient]) -> None:
    if client is None:
        return
    try:
        client.logout()
    except (OSError, IMAPClientError) as e:
        logger.debug(f"Ignoring IMAP logout failure: {e}")


def has_new_mail(responses: Optional[List[Any]]) -> bool:
    for response in responses or []:
        if isinstance(response, tuple) and len(response) >= 2 and response[1] in NEW_MAIL_RESPONSES:
            return True
    return False


@dataclass
class _Monitor:
    account_id: str
    email_address: str
    mode: str  # "idle" or "poll"
    state: MonitorState = MonitorState.CONNECTING
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    client: Optional[Any] = None
    reconnects: int = 0
    jobs_enqueued: int = 0
    last_notification_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "email_address": self.email_address,
            "mode": self.mode,
            "state": self.state.value,
            "reconnects": self.reconnects,
            "jobs_enqueued": self.jobs_enqueued,
            "last_notification_at": format_utc_iso(self.last_notification_at) if self.last_notification_at else None,
            "last_error": self.last_error,
        }


class ImapIdleMonitor:
    """Supervises IDLE connections and poll timers for IMAP accounts."""

    def __init__(
        self,
        queue: SyncJobQueue,
        cipher: Optional[CredentialCipher] = None,
        client_factory: Callable[[Dict[str, Any]], Any] = open_idle_client,
        poll_interval: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        idle_check_seconds: Optional[float] = None,
        idle_refresh_seconds: Optional[float] = None,
    ):
        self.queue = queue
        self.cipher = cipher or CredentialCipher()
        self.client_factory = client_factory
        self.poll_interval = poll_interval if poll_interval is not None else settings.imap_poll_interval_seconds
        self.reconnect_delay = reconnect_delay if reconnect_delay is not None else settings.imap_reconnect_delay_seconds
        self.idle_check_seconds = idle_check_seconds if idle_check_seconds is not None else settings.imap_idle_check_seconds
        self.idle_refresh_seconds = (
            idle_refresh_seconds if idle_refresh_seconds is not None else settings.imap_idle_refresh_seconds
        )
        self._monitors: Dict[str, _Monitor] = {}

    def is_running(self, account_id: str) -> bool:
        monitor = self._monitors.get(account_id)
        return monitor is not None and monitor.task is not None and not monitor.task.done()

    async def start(self, account: Account) -> None:
        """Start monitoring ``account``. A running monitor is left as is."""
        if account.provider_kind is not ProviderKind.POLL:
            raise ValidationError(f"Account {account.id} is not an IMAP account")
        if self.is_running(account.id):
            return

        credentials = self.cipher.decrypt(account.encrypted_credentials)
        supports_idle = isinstance(account.session, PollSession) and account.session.supports_idle
        monitor = _Monitor(
            account_id=account.id,
            email_address=account.email_address,
            mode="idle" if supports_idle else "poll",
        )
        monitor.task = asyncio.create_task(self._supervise(monitor, credentials), name=f"imap-monitor-{account.id}")
        self._monitors[account.id] = monitor
        self._update_gauges()
        logger.info(f"Started IMAP {monitor.mode} monitor for {account.email_address}")

    async def stop(self, account_id: str) -> None:
        monitor = self._monitors.pop(account_id, None)
        if monitor is None:
            return
        await self._shutdown([monitor])
        self._update_gauges()
        logger.info(f"Stopped IMAP monitor for {monitor.email_address}")

    async def stop_all(self) -> None:
        """Signal every monitor, wait for it, and close its connection."""
        monitors = list(self._monitors.values())
        self._monitors.clear()
        if monitors:
            await self._shutdown(monitors)
        self._update_gauges()
        logger.info(f"Stopped {len(monitors)} IMAP monitor(s)")

    def status(self) -> List[Dict[str, Any]]:
        return [monitor.to_dict() for monitor in self._monitors.values()]

    async def _shutdown(self, monitors: List[_Monitor]) -> None:
        for monitor in monitors:
            monitor.stop_event.set()
        tasks = [monitor.task for monitor in monitors if monitor.task is not None]
        if tasks:
            # A thread blocked in idle_check returns within one check interval
            _, pending = await asyncio.wait(tasks, timeout=self.idle_check_seconds + 5)
            for task in pending:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for monitor in monitors:
            if monitor.client is not None:
                await asyncio.to_thread(_logout, monitor.client)
                monitor.client = None
            monitor.state = MonitorState.STOPPED

    async def _supervise(self, monitor: _Monitor, credentials: Dict[str, Any]) -> None:
        while not monitor.stop_event.is_set():
            try:
                if monitor.mode == "idle":
                    await self._idle_session(monitor, credentials)
                else:
                    await self._poll_loop(monitor)
            except asyncio.CancelledError:
                raise
            except AuthenticationError as e:
                monitor.last_error = e.message
                monitor.state = MonitorState.STOPPED
                logger.error(f"IMAP monitor for {monitor.email_address} stopped: {e.message}")
                break
            except Exception as e:
                monitor.last_error = str(e)
                monitor.state = MonitorState.RECONNECTING
                monitor.reconnects += 1
                logger.warning(
                    f"IMAP connection for {monitor.email_address} dropped ({e}), "
                    f"reconnecting in {self.reconnect_delay}s"
                )
                await self._wait(monitor, self.reconnect_delay)

        monitor.state = MonitorState.STOPPED
        self._update_gauges()

    async def _idle_session(self, monitor: _Monitor, credentials: Dict[str, Any]) -> None:
        monitor.state = MonitorState.CONNECTING
        client = await asyncio.to_thread(self.client_factory, credentials)
        monitor.client = client
        try:
            await asyncio.to_thread(client.select_folder, "INBOX", readonly=True)
            monitor.state = MonitorState.CONNECTED
            logger.debug(f"IDLE connection ready for {monitor.email_address}")
            # Mail that arrived while no connection was parked in IDLE
            await self._enqueue(monitor)

            while not monitor.stop_event.is_set():
                await asyncio.to_thread(client.idle)
                idle_started = time.monotonic()
                new_mail = False
                try:
                    # Re-issue IDLE before the server's inactivity timeout
                    while not monitor.stop_event.is_set() and time.monotonic() - idle_started < self.idle_refresh_seconds:
                        responses = await asyncio.to_thread(client.idle_check, timeout=self.idle_check_seconds)
                        if has_new_mail(responses):
                            new_mail = True
                            break
                finally:
                    await asyncio.to_thread(client.idle_done)

                if new_mail:
                    monitor.last_notification_at = utc_now()
                    await self._enqueue(monitor)
        finally:
            monitor.client = None
            await asyncio.to_thread(_logout, client)

    async def _poll_loop(self, monitor: _Monitor) -> None:
        monitor.state = MonitorState.POLLING
        while not monitor.stop_event.is_set():
            await self._enqueue(monitor)
            if await self._wait(monitor, self.poll_interval):
                return

    async def _enqueue(self, monitor: _Monitor) -> None:
        job_id = await self.queue.enqueue(SyncJob(account_id=monitor.account_id))
        monitor.jobs_enqueued += 1
        logger.debug(f"IMAP {monitor.mode} monitor enqueued sync job {job_id} for {monitor.email_address}")

    @staticmethod
    async def _wait(monitor: _Monitor, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(monitor.stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _update_gauges(self) -> None:
        running = [m for m in self._monitors.values() if m.state is not MonitorState.STOPPED]
        MetricsCollector.set_imap_monitors("idle", sum(1 for m in running if m.mode == "idle"))
        MetricsCollector.set_imap_monitors("poll", sum(1 for m in running if m.mode == "poll"))
