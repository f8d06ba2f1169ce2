"""Tests for the IMAP IDLE / poll monitor with a mocked imapclient connection."""

import asyncio
import time

import pytest
from unittest.mock import MagicMock

from mailsync.exceptions import AuthenticationError, ValidationError
from mailsync.services.email_models import PollSession, ProviderKind
from mailsync.services.imap_idle_monitor import ImapIdleMonitor, MonitorState, has_new_mail
from mailsync.utils.datetime_utils import utc_now

IMAP = {"host": "imap.example.com", "username": "dave", "password": "pw"}


def _idle_client(responses):
    """Client whose idle_check replays ``responses`` and then stays quiet."""
    client = MagicMock()
    script = list(responses)

    def idle_check(timeout=None):
        if script:
            return script.pop(0)
        time.sleep(timeout or 0)
        return []

    client.idle_check.side_effect = idle_check
    return client


async def _wait_until(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def imap_account(make_account):
    async def _make(supports_idle: bool = True):
        return await make_account(
            ProviderKind.POLL, "dave@example.com", session=PollSession(supports_idle, utc_now()), credentials=IMAP
        )
    return _make


def _monitor(queue, cipher, factory, **overrides):
    options = dict(poll_interval=0.05, reconnect_delay=0.05, idle_check_seconds=0.01, idle_refresh_seconds=60)
    options.update(overrides)
    return ImapIdleMonitor(queue, cipher, client_factory=factory, **options)


class TestNewMailDetection:
    """Untagged responses that signal new mail."""

    def test_exists_and_recent(self):
        assert has_new_mail([(3, b"EXISTS")])
        assert has_new_mail([(b"OK", b"Still here"), (1, b"RECENT")])
        assert not has_new_mail([(2, b"EXPUNGE")])
        assert not has_new_mail([])
        assert not has_new_mail(None)


class TestImapIdleMonitor:
    """Per-account supervision."""

    @pytest.mark.asyncio
    async def test_exists_response_enqueues_sync(self, queue, cipher, imap_account):
        account = await imap_account()
        client = _idle_client([[], [(5, b"EXISTS")]])
        monitor = _monitor(queue, cipher, lambda credentials: client)

        await monitor.start(account)
        try:
            await _wait_until(lambda: len(queue.jobs) >= 2)
            assert monitor.status()[0]["state"] == MonitorState.CONNECTED.value
        finally:
            await monitor.stop_all()

        # One catch-up job on connect, one for the EXISTS response
        assert len(queue.jobs) == 2
        assert all(job.account_id == account.id for job in queue.jobs)
        client.select_folder.assert_called_with("INBOX", readonly=True)
        assert client.idle.called
        assert client.idle_done.called
        client.logout.assert_called()

    @pytest.mark.asyncio
    async def test_connect_enqueues_catch_up_sync_without_new_mail(self, queue, cipher, imap_account):
        account = await imap_account()
        client = _idle_client([])
        monitor = _monitor(queue, cipher, lambda credentials: client)

        await monitor.start(account)
        try:
            await _wait_until(lambda: len(queue.jobs) >= 1)
        finally:
            await monitor.stop_all()

        assert queue.jobs[0].account_id == account.id
        assert len(queue.jobs) == 1
        assert queue.jobs[0].full_sync is False

    @pytest.mark.asyncio
    async def test_poll_mode_syncs_before_the_first_interval(self, queue, cipher, imap_account):
        account = await imap_account(supports_idle=False)
        monitor = _monitor(queue, cipher, MagicMock(), poll_interval=60)

        await monitor.start(account)
        try:
            await _wait_until(lambda: len(queue.jobs) >= 1)
        finally:
            await monitor.stop_all()

        assert len(queue.jobs) == 1
        assert queue.jobs[0].account_id == account.id

    @pytest.mark.asyncio
    async def test_poll_mode_without_idle(self, queue, cipher, imap_account):
        account = await imap_account(supports_idle=False)
        factory = MagicMock()
        monitor = _monitor(queue, cipher, factory)

        await monitor.start(account)
        try:
            await _wait_until(lambda: len(queue.jobs) >= 2)
            assert monitor.status()[0]["mode"] == "poll"
            assert monitor.status()[0]["state"] == MonitorState.POLLING.value
        finally:
            await monitor.stop_all()

        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_dropped_connection_reconnects_in_same_task(self, queue, cipher, imap_account):
        account = await imap_account()
        first = MagicMock()
        first.select_folder.side_effect = ConnectionResetError("connection reset")
        second = _idle_client([[(1, b"EXISTS")]])
        clients = [first, second]
        monitor = _monitor(queue, cipher, lambda credentials: clients.pop(0))

        await monitor.start(account)
        try:
            await _wait_until(lambda: len(queue.jobs) >= 1)
            status = monitor.status()[0]
            assert status["reconnects"] == 1
        finally:
            await monitor.stop_all()

        first.logout.assert_called()

    @pytest.mark.asyncio
    async def test_rejected_login_stops_monitor(self, queue, cipher, imap_account):
        account = await imap_account()

        def factory(credentials):
            raise AuthenticationError("bad password")

        monitor = _monitor(queue, cipher, factory)
        await monitor.start(account)
        await _wait_until(lambda: not monitor.is_running(account.id))

        assert monitor.status()[0]["state"] == MonitorState.STOPPED.value
        assert queue.jobs == []
        await monitor.stop_all()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, queue, cipher, imap_account):
        account = await imap_account(supports_idle=False)
        monitor = _monitor(queue, cipher, MagicMock(), poll_interval=60)

        await monitor.start(account)
        await monitor.start(account)
        try:
            assert len(monitor.status()) == 1
        finally:
            await monitor.stop_all()

        assert monitor.status() == []

    @pytest.mark.asyncio
    async def test_stop_single_account(self, queue, cipher, imap_account):
        account = await imap_account(supports_idle=False)
        monitor = _monitor(queue, cipher, MagicMock(), poll_interval=60)

        await monitor.start(account)
        await monitor.stop(account.id)

        assert not monitor.is_running(account.id)
        assert monitor.status() == []

    @pytest.mark.asyncio
    async def test_push_accounts_are_rejected(self, queue, cipher, make_account):
        account = await make_account(ProviderKind.WEBHOOK_PUSH)
        monitor = _monitor(queue, cipher, MagicMock())

        with pytest.raises(ValidationError):
            await monitor.start(account)
