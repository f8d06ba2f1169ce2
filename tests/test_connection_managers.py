"""Tests for the provider connection managers with a mocked REST client."""

from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from mailsync.exceptions import ExternalServiceError, NotFoundError
from mailsync.services.connection_managers import ImapConnectionManager
from mailsync.services.connection_managers.gmail import GmailConnectionManager
from mailsync.services.connection_managers.outlook import (
    INBOX_RESOURCE,
    MAX_SUBSCRIPTION_LIFETIME,
    OutlookConnectionManager,
)
from mailsync.services.email_models import Account, PollSession, ProviderKind, PubSubSession, WebhookSession
from mailsync.utils.datetime_utils import format_utc_iso, utc_now


@pytest.fixture
def client():
    mock = MagicMock()
    mock.request = AsyncMock()
    return mock


def _account(cipher, kind, credentials=None):
    return Account.create("user-1", kind, "bob@example.com", cipher.encrypt(credentials or {"access_token": "at"}))


class TestOutlookConnectionManager:
    """Graph subscription lifecycle."""

    @pytest.fixture
    def manager(self, cipher, client):
        return OutlookConnectionManager(cipher, client, webhook_base_url="https://hooks.example.com")

    @pytest.mark.asyncio
    async def test_setup_creates_subscription(self, manager, client, cipher):
        expires = utc_now() + timedelta(days=2)
        client.request.return_value = {"id": "sub-1", "expirationDateTime": format_utc_iso(expires)}
        account = _account(cipher, ProviderKind.WEBHOOK_PUSH)

        await manager.setup(account)

        method, endpoint, _ = client.request.await_args.args
        payload = client.request.await_args.kwargs["data"]
        assert (method, endpoint) == ("POST", "/subscriptions")
        assert payload["changeType"] == "created"
        assert payload["resource"] == INBOX_RESOURCE
        assert payload["notificationUrl"] == "https://hooks.example.com/webhooks/outlook"
        assert len(payload["clientState"]) == 64
        assert account.session.subscription_id == "sub-1"
        assert account.session.webhook_secret == payload["clientState"]

    @pytest.mark.asyncio
    async def test_requested_expiry_respects_graph_limit(self, manager, client, cipher):
        client.request.return_value = {"id": "sub-1"}
        account = _account(cipher, ProviderKind.WEBHOOK_PUSH)

        await manager.setup(account)

        assert account.session.expires_at < utc_now() + MAX_SUBSCRIPTION_LIFETIME

    @pytest.mark.asyncio
    async def test_setup_without_id_is_an_error(self, manager, client, cipher):
        client.request.return_value = {}

        with pytest.raises(ExternalServiceError):
            await manager.setup(_account(cipher, ProviderKind.WEBHOOK_PUSH))

    @pytest.mark.asyncio
    async def test_renew_patches_subscription(self, manager, client, cipher):
        account = _account(cipher, ProviderKind.WEBHOOK_PUSH)
        account.session = WebhookSession("sub-1", utc_now() + timedelta(hours=3), "secret")
        new_expiry = utc_now() + timedelta(days=2)
        client.request.return_value = {"expirationDateTime": format_utc_iso(new_expiry)}

        await manager.renew(account)

        assert client.request.await_args.args[:2] == ("PATCH", "/subscriptions/sub-1")
        assert account.session.subscription_id == "sub-1"
        assert account.session.webhook_secret == "secret"
        assert account.session.expires_at == new_expiry

    @pytest.mark.asyncio
    async def test_renew_of_lost_subscription_recreates_it(self, manager, client, cipher):
        account = _account(cipher, ProviderKind.WEBHOOK_PUSH)
        account.session = WebhookSession("sub-1", utc_now(), "secret")
        client.request.side_effect = [NotFoundError("gone"), {"id": "sub-2"}]

        await manager.renew(account)

        assert account.session.subscription_id == "sub-2"
        assert client.request.await_args.args[:2] == ("POST", "/subscriptions")

    @pytest.mark.asyncio
    async def test_teardown_tolerates_missing_subscription(self, manager, client, cipher):
        account = _account(cipher, ProviderKind.WEBHOOK_PUSH)
        account.session = WebhookSession("sub-1", utc_now(), "secret")
        client.request.side_effect = NotFoundError("gone")

        await manager.teardown(account)

        assert account.session is None

    @pytest.mark.asyncio
    async def test_refreshed_token_written_back(self, manager, client, cipher):
        account = _account(cipher, ProviderKind.WEBHOOK_PUSH, {"access_token": "old", "refresh_token": "rt"})

        async def refreshing_request(method, endpoint, credentials, **kwargs):
            credentials["access_token"] = "new"
            return {"id": "sub-1"}

        client.request.side_effect = refreshing_request
        await manager.setup(account)

        assert cipher.decrypt(account.encrypted_credentials)["access_token"] == "new"


class TestGmailConnectionManager:
    """Gmail watch lifecycle."""

    @pytest.fixture
    def manager(self, cipher, client):
        return GmailConnectionManager(cipher, client, topic_name="projects/p/topics/t")

    @pytest.mark.asyncio
    async def test_setup_registers_watch(self, manager, client, cipher):
        expiration = utc_now() + timedelta(days=7)
        client.request.return_value = {"historyId": "4242", "expiration": str(int(expiration.timestamp() * 1000))}
        account = _account(cipher, ProviderKind.PUBSUB_PUSH)

        await manager.setup(account)

        assert client.request.await_args.args[:2] == ("POST", "/users/me/watch")
        assert client.request.await_args.kwargs["data"]["topicName"] == "projects/p/topics/t"
        assert client.request.await_args.kwargs["data"]["labelIds"] == ["INBOX"]
        assert account.session.history_cursor == "4242"
        assert abs((account.session.watch_expires_at - expiration).total_seconds()) < 1

    @pytest.mark.asyncio
    async def test_renew_keeps_stored_cursor(self, manager, client, cipher):
        """Unsynced history between the old cursor and the watch response is not skipped."""
        account = _account(cipher, ProviderKind.PUBSUB_PUSH)
        account.session = PubSubSession("100", utc_now() + timedelta(hours=5))
        client.request.return_value = {"historyId": "900"}

        await manager.renew(account)

        assert account.session.history_cursor == "100"
        assert account.session.watch_expires_at > utc_now() + timedelta(days=6)

    @pytest.mark.asyncio
    async def test_teardown_stops_watch(self, manager, client, cipher):
        account = _account(cipher, ProviderKind.PUBSUB_PUSH)
        account.session = PubSubSession("100", utc_now())
        client.request.return_value = {}

        await manager.teardown(account)

        assert client.request.await_args.args[:2] == ("POST", "/users/me/stop")
        assert account.session is None

    @pytest.mark.asyncio
    async def test_health_is_local(self, manager, client, cipher):
        account = _account(cipher, ProviderKind.PUBSUB_PUSH)
        account.session = PubSubSession("100", utc_now() + timedelta(days=5))

        assert await manager.is_healthy(account)
        account.session = PubSubSession("100", utc_now() + timedelta(hours=1))
        assert not await manager.is_healthy(account)
        client.request.assert_not_awaited()


class TestImapConnectionManager:
    """IMAP has no subscription; setup records IDLE support."""

    @pytest.mark.asyncio
    async def test_setup_records_idle_capability(self, cipher):
        connector = MagicMock()
        connector.check_capabilities = AsyncMock(return_value={"IDLE": True})
        manager = ImapConnectionManager(cipher, connector)
        account = _account(cipher, ProviderKind.POLL, {"host": "imap.example.com", "username": "u", "password": "p"})

        await manager.setup(account)

        assert isinstance(account.session, PollSession)
        assert account.session.supports_idle is True

    @pytest.mark.asyncio
    async def test_health_check_failure(self, cipher):
        connector = MagicMock()
        connector.check_capabilities = AsyncMock(side_effect=ExternalServiceError("unreachable"))
        manager = ImapConnectionManager(cipher, connector)
        account = _account(cipher, ProviderKind.POLL, {"host": "imap.example.com", "username": "u", "password": "p"})

        assert await manager.is_healthy(account) is False
