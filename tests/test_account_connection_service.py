"""Tests for the connect / disconnect use cases."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from mailsync.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    DuplicateAccountError,
    ExternalServiceError,
    PermissionDeniedError,
    ValidationError,
)
from mailsync.services.account_connection_service import AccountConnectionService
from mailsync.services.email_models import ConnectionState, ProviderKind

OAUTH = {"access_token": "at", "refresh_token": "rt"}
IMAP = {"host": "imap.example.com", "username": "dave", "password": "pw"}


@pytest.fixture
def idle_monitor():
    monitor = MagicMock()
    monitor.start = AsyncMock()
    monitor.stop = AsyncMock()
    return monitor


@pytest.fixture
def connections(account_store, managers, queue, cipher, idle_monitor):
    return AccountConnectionService(account_store, managers, queue, cipher, idle_monitor)


class TestConnect:
    """Connecting a mailbox."""

    @pytest.mark.asyncio
    async def test_connect_activates_and_enqueues_full_sync(self, connections, account_store, queue, cipher):
        account = await connections.connect("user-1", "outlook", "Bob@Example.com", OAUTH)

        stored = await account_store.get(account.id)
        assert stored.connection_state is ConnectionState.ACTIVE
        assert stored.subscription_ref == "sub-new"
        assert cipher.decrypt(stored.encrypted_credentials) == OAUTH
        assert len(queue.jobs) == 1
        assert queue.jobs[0].full_sync is True

    @pytest.mark.asyncio
    async def test_connect_imap_starts_monitor(self, connections, idle_monitor):
        account = await connections.connect("user-1", "imap", "dave@example.com", IMAP)

        idle_monitor.start.assert_awaited_once()
        assert idle_monitor.start.await_args.args[0].id == account.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind, address, credentials", [
        ("exchange", "bob@example.com", OAUTH),
        ("outlook", "not-an-address", OAUTH),
        ("outlook", "bob@example.com", {}),
        ("gmail", "bob@gmail.com", {"scope": "mail"}),
        ("imap", "dave@example.com", {"host": "imap.example.com"}),
    ])
    async def test_invalid_input_rejected_before_io(self, connections, account_store, managers, kind, address, credentials):
        with pytest.raises(ValidationError):
            await connections.connect("user-1", kind, address, credentials)

        assert account_store.accounts == {}
        assert all(not managers.get(k).calls for k in ProviderKind)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, connections):
        await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)

        with pytest.raises(DuplicateAccountError):
            await connections.connect("user-1", "outlook", "BOB@example.com", OAUTH)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [AuthenticationError("bad token"), ExternalServiceError("graph down")])
    async def test_setup_failure_removes_account(self, connections, account_store, managers, queue, error):
        managers.get(ProviderKind.WEBHOOK_PUSH).setup_error = error

        with pytest.raises(type(error)):
            await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)

        assert account_store.accounts == {}
        assert len(account_store.deleted) == 1
        assert queue.jobs == []


class TestDisconnect:
    """Disconnecting keeps the row but clears the subscription."""

    @pytest.mark.asyncio
    async def test_disconnect_deactivates_and_tears_down(self, connections, account_store, managers):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)

        await connections.disconnect(account.id, "user-1")

        stored = await account_store.get(account.id)
        assert stored.connection_state is ConnectionState.DISCONNECTED
        assert stored.session is None
        assert ("teardown", account.id) in managers.get(ProviderKind.WEBHOOK_PUSH).calls

    @pytest.mark.asyncio
    async def test_teardown_failure_is_not_raised(self, connections, account_store, managers):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)
        managers.get(ProviderKind.WEBHOOK_PUSH).teardown_error = ExternalServiceError("graph down")

        await connections.disconnect(account.id, "user-1")

        assert not (await account_store.get(account.id)).is_active

    @pytest.mark.asyncio
    async def test_disconnect_imap_stops_monitor(self, connections, idle_monitor):
        account = await connections.connect("user-1", "imap", "dave@example.com", IMAP)

        await connections.disconnect(account.id, "user-1")

        idle_monitor.stop.assert_awaited_once_with(account.id)

    @pytest.mark.asyncio
    async def test_other_users_account_is_refused(self, connections):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)

        with pytest.raises(PermissionDeniedError):
            await connections.disconnect(account.id, "user-2")

    @pytest.mark.asyncio
    async def test_unknown_account(self, connections):
        with pytest.raises(AccountNotFoundError):
            await connections.disconnect("missing", "user-1")


class TestReconnect:
    """Connecting an address the user disconnected before."""

    @pytest.mark.asyncio
    async def test_reconnect_reactivates_the_same_account(self, connections, account_store, managers, queue, cipher):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)
        await account_store.advance_cursor(account.id, None, account.created_at)
        await connections.disconnect(account.id, "user-1")
        queue.jobs.clear()

        reconnected = await connections.connect("user-1", "outlook", "bob@example.com", {"access_token": "fresh"})

        assert reconnected.id == account.id
        stored = await account_store.get(account.id)
        assert stored.connection_state is ConnectionState.ACTIVE
        assert stored.subscription_ref == "sub-new"
        assert stored.last_synced_at is not None
        assert cipher.decrypt(stored.encrypted_credentials) == {"access_token": "fresh"}
        assert len(account_store.accounts) == 1
        assert managers.get(ProviderKind.WEBHOOK_PUSH).calls.count(("setup", account.id)) == 2
        assert queue.jobs[0].account_id == account.id
        assert queue.jobs[0].full_sync is True

    @pytest.mark.asyncio
    async def test_reconnect_imap_restarts_monitor(self, connections, idle_monitor):
        account = await connections.connect("user-1", "imap", "dave@example.com", IMAP)
        await connections.disconnect(account.id, "user-1")

        await connections.connect("user-1", "imap", "dave@example.com", IMAP)

        assert idle_monitor.start.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_reconnect_keeps_the_account_disconnected(self, connections, account_store, managers, queue,
                                                                   cipher):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)
        await connections.disconnect(account.id, "user-1")
        queue.jobs.clear()
        managers.get(ProviderKind.WEBHOOK_PUSH).setup_error = AuthenticationError("consent revoked")

        with pytest.raises(AuthenticationError):
            await connections.connect("user-1", "outlook", "bob@example.com", {"access_token": "bad"})

        stored = await account_store.get(account.id)
        assert stored.connection_state is ConnectionState.DISCONNECTED
        assert stored.session is None
        assert cipher.decrypt(stored.encrypted_credentials) == OAUTH
        assert account_store.deleted == []
        assert queue.jobs == []

    @pytest.mark.asyncio
    async def test_reconnect_with_another_provider_is_rejected(self, connections):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)
        await connections.disconnect(account.id, "user-1")

        with pytest.raises(ValidationError):
            await connections.connect("user-1", "imap", "bob@example.com", IMAP)


class TestListAccounts:
    """Listing a user's accounts."""

    @pytest.mark.asyncio
    async def test_lists_own_accounts_in_every_state(self, connections):
        first = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)
        second = await connections.connect("user-1", "gmail", "bob@gmail.com", OAUTH)
        await connections.connect("user-2", "outlook", "eve@example.com", OAUTH)
        await connections.disconnect(first.id, "user-1")

        accounts = await connections.list_accounts("user-1")

        assert [account.id for account in accounts] == [first.id, second.id]
        assert accounts[0].connection_state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_accounts(self, connections):
        assert await connections.list_accounts("nobody") == []


class TestManualSyncAndHealth:
    """Manual triggers and health checks."""

    @pytest.mark.asyncio
    async def test_request_sync(self, connections, queue):
        account = await connections.connect("user-1", "gmail", "carol@gmail.com", OAUTH)

        job_id = await connections.request_sync(account.id, "user-1", full_sync=False)

        assert queue.jobs[-1].job_id == job_id
        assert queue.jobs[-1].full_sync is False

    @pytest.mark.asyncio
    async def test_request_sync_on_disconnected_account(self, connections):
        account = await connections.connect("user-1", "gmail", "carol@gmail.com", OAUTH)
        await connections.disconnect(account.id, "user-1")

        with pytest.raises(ValidationError):
            await connections.request_sync(account.id, "user-1")

    @pytest.mark.asyncio
    async def test_health_report(self, connections, managers):
        account = await connections.connect("user-1", "outlook", "bob@example.com", OAUTH)
        managers.get(ProviderKind.WEBHOOK_PUSH).healthy = False

        report = await connections.check_health(account.id, "user-1")

        assert report["healthy"] is False
        assert report["state"] == "active"
        assert report["subscription_expires_at"] is not None
