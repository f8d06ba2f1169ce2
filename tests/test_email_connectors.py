"""Tests for the provider adapters and shared HTTP error mapping."""

import imaplib
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock

from mailsync.exceptions import (
    AuthenticationError,
    CursorNotFoundError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from mailsync.services.email_connectors import ConnectorFactory, GmailConnector, IMAPConnector, OutlookConnector
from mailsync.services.email_connectors.http_client import OAuthRestClient
from mailsync.services.email_connectors import imap_connector
from mailsync.services.email_connectors.imap_connector import ImapSettings, decode_mime_header
from mailsync.services.email_models import ProviderKind
from mailsync.utils.datetime_utils import parse_iso

CREDENTIALS = {"access_token": "at"}


def _gmail_message(message_id: str, history_id: str = "1"):
    return {
        "id": message_id,
        "snippet": "hi",
        "internalDate": "1760961600000",
        "labelIds": ["INBOX"],
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": "Alice <alice@example.com>"},
                {"name": "To", "value": "bob@example.com"},
                {"name": "Subject", "value": f"Subject {message_id}"},
            ],
        },
    }


def _client(handler):
    client = MagicMock()
    client.request = AsyncMock(side_effect=handler)
    return client


class TestErrorMapping:
    """HTTP status to error family."""

    @pytest.fixture
    def client(self):
        return OAuthRestClient("graph", "https://graph.example.com", "https://login.example.com/token")

    @pytest.mark.parametrize("status, error_type", [
        (401, AuthenticationError),
        (403, AuthenticationError),
        (404, NotFoundError),
        (429, RateLimitError),
        (500, ExternalServiceError),
        (503, ExternalServiceError),
    ])
    def test_status_mapping(self, client, status, error_type):
        assert isinstance(client.map_error(status, "boom"), error_type)

    def test_retry_after_header(self, client):
        error = client.map_error(429, "slow down", {"Retry-After": "12"})
        assert error.retry_after == 12.0
        assert error.retryable


class TestGmailConnector:
    """Inbox listing and history paging."""

    @pytest.mark.asyncio
    async def test_full_listing_uses_profile_history_id(self):
        async def handler(method, endpoint, credentials, params=None, data=None):
            if endpoint == "/users/me/profile":
                return {"historyId": "777"}
            if endpoint == "/users/me/messages":
                return {"messages": [{"id": "a"}, {"id": "b"}]}
            return _gmail_message(endpoint.rsplit("/", 1)[-1])

        connector = GmailConnector(_client(handler))
        result = await connector.list_since(CREDENTIALS, None, 50)

        assert result.next_cursor == "777"
        assert [item.provider_message_id for item in result.items] == ["a", "b"]
        assert result.items[0].timestamp == datetime(2025, 10, 20, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_history_listing_keeps_added_messages(self):
        async def handler(method, endpoint, credentials, params=None, data=None):
            if endpoint == "/users/me/history":
                assert params["startHistoryId"] == "100"
                assert params["historyTypes"] == "messageAdded"
                return {
                    "history": [
                        {"id": "101", "messagesAdded": [{"message": {"id": "x"}}]},
                        {"id": "102", "labelsAdded": [{"message": {"id": "y"}}]},
                    ],
                    "historyId": "105",
                }
            return _gmail_message(endpoint.rsplit("/", 1)[-1])

        connector = GmailConnector(_client(handler))
        result = await connector.list_since(CREDENTIALS, "100", 50)

        assert [item.provider_message_id for item in result.items] == ["x"]
        assert result.next_cursor == "105"

    @pytest.mark.asyncio
    async def test_truncated_history_resumes_from_last_consumed_record(self):
        async def handler(method, endpoint, credentials, params=None, data=None):
            if endpoint == "/users/me/history":
                return {
                    "history": [
                        {"id": "101", "messagesAdded": [{"message": {"id": "x"}}]},
                        {"id": "102", "messagesAdded": [{"message": {"id": "y"}}]},
                    ],
                    "historyId": "105",
                }
            return _gmail_message(endpoint.rsplit("/", 1)[-1])

        connector = GmailConnector(_client(handler))
        result = await connector.list_since(CREDENTIALS, "100", 1)

        assert [item.provider_message_id for item in result.items] == ["x"]
        assert result.next_cursor == "101"
        assert result.has_more is True

    @pytest.mark.asyncio
    async def test_record_larger_than_limit_is_taken_whole(self):
        async def handler(method, endpoint, credentials, params=None, data=None):
            if endpoint == "/users/me/history":
                return {
                    "history": [
                        {"id": "101", "messagesAdded": [{"message": {"id": m}} for m in ("a", "b", "c")]},
                        {"id": "102", "messagesAdded": [{"message": {"id": "d"}}]},
                    ],
                    "historyId": "105",
                }
            return _gmail_message(endpoint.rsplit("/", 1)[-1])

        connector = GmailConnector(_client(handler))
        result = await connector.list_since(CREDENTIALS, "100", 2)

        assert [item.provider_message_id for item in result.items] == ["a", "b", "c"]
        assert result.next_cursor == "101"
        assert result.has_more is True

    @pytest.mark.asyncio
    async def test_expired_history_id(self):
        async def handler(method, endpoint, credentials, params=None, data=None):
            raise NotFoundError("Requested entity was not found")

        connector = GmailConnector(_client(handler))
        with pytest.raises(CursorNotFoundError):
            await connector.list_since(CREDENTIALS, "1", 50)

    @pytest.mark.asyncio
    async def test_vanished_message_is_skipped(self):
        async def handler(method, endpoint, credentials, params=None, data=None):
            if endpoint == "/users/me/profile":
                return {"historyId": "9"}
            if endpoint == "/users/me/messages":
                return {"messages": [{"id": "gone"}, {"id": "here"}]}
            if endpoint.endswith("/gone"):
                raise NotFoundError("deleted")
            return _gmail_message("here")

        connector = GmailConnector(_client(handler))
        result = await connector.list_since(CREDENTIALS, None, 50)

        assert [item.provider_message_id for item in result.items] == ["here"]


class TestOutlookConnector:
    """Graph listing."""

    @pytest.mark.asyncio
    async def test_listing_filters_on_cursor_and_follows_next_link(self):
        calls = []

        async def handler(method, endpoint, credentials, params=None, data=None):
            calls.append((endpoint, params))
            message = {
                "id": f"m{len(calls)}",
                "from": {"emailAddress": {"name": "Alice", "address": "alice@example.com"}},
                "toRecipients": [{"emailAddress": {"address": "bob@example.com"}}],
                "subject": "Hi",
                "bodyPreview": "preview",
                "receivedDateTime": "2025-10-20T12:00:00Z",
                "hasAttachments": False,
            }
            if len(calls) == 1:
                return {"value": [message], "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/messages?$skip=1"}
            return {"value": [message]}

        connector = OutlookConnector(_client(handler))
        cursor = datetime(2025, 10, 20, 11, 0, tzinfo=timezone.utc)
        result = await connector.list_since(CREDENTIALS, cursor, 50)

        first_endpoint, first_params = calls[0]
        assert first_endpoint == "/me/messages"
        assert first_params["$filter"] == "receivedDateTime ge 2025-10-20T11:00:00Z"
        assert first_params["$orderby"] == "receivedDateTime asc"
        assert calls[1] == ("https://graph.microsoft.com/v1.0/me/messages?$skip=1", None)
        assert len(result.items) == 2
        assert result.items[0].from_header == "Alice <alice@example.com>"
        assert result.next_cursor > cursor

    @pytest.mark.asyncio
    async def test_backlog_larger_than_limit_is_read_across_passes(self):
        start = datetime(2025, 10, 20, 12, 0, tzinfo=timezone.utc)
        mailbox = [
            {
                "id": f"new{index}",
                "from": {"emailAddress": {"address": "alice@example.com"}},
                "subject": f"New {index}",
                "receivedDateTime": (start + timedelta(seconds=index + 1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
            for index in range(3)
        ]

        async def handler(method, endpoint, credentials, params=None, data=None):
            since = parse_iso(params["$filter"].split(" ge ")[1])
            assert params["$orderby"] == "receivedDateTime asc"
            matching = [message for message in mailbox if parse_iso(message["receivedDateTime"]) >= since]
            page = {"value": matching[:params["$top"]]}
            if len(matching) > params["$top"]:
                page["@odata.nextLink"] = "https://graph.microsoft.com/v1.0/me/messages?$skiptoken=1"
            return page

        connector = OutlookConnector(_client(handler))
        first = await connector.list_since(CREDENTIALS, start, 2)
        second = await connector.list_since(CREDENTIALS, first.next_cursor, 2)

        assert [item.provider_message_id for item in first.items] == ["new0", "new1"]
        assert first.has_more is True
        assert first.next_cursor == start + timedelta(seconds=2)
        assert second.has_more is False
        seen = {item.provider_message_id for item in first.items + second.items}
        assert seen == {"new0", "new1", "new2"}

    @pytest.mark.asyncio
    async def test_full_listing_is_newest_first_and_never_has_more(self):
        calls = []

        async def handler(method, endpoint, credentials, params=None, data=None):
            calls.append(params)
            return {
                "value": [{"id": "m1", "receivedDateTime": "2025-10-20T12:00:00Z"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/messages?$skip=1",
            }

        connector = OutlookConnector(_client(handler))
        result = await connector.list_since(CREDENTIALS, None, 1)

        assert calls[0]["$orderby"] == "receivedDateTime desc"
        assert "$filter" not in calls[0]
        assert result.has_more is False


class TestImapHelpers:
    """Credential parsing and header decoding."""

    def test_ssl_defaults(self):
        params = ImapSettings({"host": "imap.example.com", "username": "u", "password": "p"})
        assert params.use_ssl and params.port == 993

    def test_starttls_port(self):
        params = ImapSettings({"server": "imap.example.com", "username": "u", "password": "p", "port": 143})
        assert not params.use_ssl and params.port == 143

    def test_missing_fields(self):
        with pytest.raises(ValidationError):
            ImapSettings({"host": "imap.example.com"})

    def test_decode_mime_header(self):
        assert decode_mime_header("=?utf-8?Q?See=20You=20At=20Supercon=21?=") == "See You At Supercon!"


class ScriptedImapSession:
    """Answers the UID SEARCH / FETCH commands the connector issues."""

    def __init__(self, mailbox):
        # (uid, received_at, message id)
        self.mailbox = mailbox

    def select(self, folder, readonly=False):
        return "OK", [str(len(self.mailbox)).encode()]

    def response(self, code):
        return code, [b"7"]

    def logout(self):
        return "BYE", [b""]

    def uid(self, command, *args):
        if command == "SEARCH":
            return "OK", [b" ".join(str(uid).encode() for uid, _, _ in self.mailbox)]
        uid_set, spec = args
        wanted = {int(uid) for uid in uid_set.split(",")}
        rows = [entry for entry in self.mailbox if entry[0] in wanted]
        if spec == "(UID INTERNALDATE)":
            return "OK", [self._envelope(index, entry) for index, entry in enumerate(rows, 1)]
        fetched = []
        for index, entry in enumerate(rows, 1):
            headers = f"From: alice@example.com\r\nSubject: {entry[2]}\r\nMessage-ID: <{entry[2]}@example.com>\r\n\r\n"
            fetched.append((self._envelope(index, entry) + b" BODY[HEADER.FIELDS (FROM)] {10}", headers.encode()))
            fetched.append(b")")
        return "OK", fetched

    @staticmethod
    def _envelope(index, entry):
        uid, received_at, _ = entry
        return f"{index} (UID {uid} INTERNALDATE {imaplib.Time2Internaldate(received_at)}".encode()


class TestImapListing:
    """Delta listing over a scripted server."""

    @pytest.mark.asyncio
    async def test_backlog_larger_than_limit_is_read_across_passes(self, monkeypatch):
        start = datetime(2025, 10, 20, 12, 0, tzinfo=timezone.utc)
        session = ScriptedImapSession(
            [(10, start - timedelta(hours=1), "old")]
            + [(11 + index, start + timedelta(seconds=index + 1), f"new{index}") for index in range(3)]
        )
        monkeypatch.setattr(imap_connector, "open_imap_connection", lambda credentials: session)
        connector = IMAPConnector()

        first = await connector.list_since({}, start, 2)
        second = await connector.list_since({}, first.next_cursor, 2)

        assert [item.provider_message_id for item in first.items] == ["new0@example.com", "new1@example.com"]
        assert first.has_more is True
        assert first.next_cursor == start + timedelta(seconds=2)
        assert second.has_more is False
        seen = {item.provider_message_id for item in first.items + second.items}
        assert seen == {"new0@example.com", "new1@example.com", "new2@example.com"}

    @pytest.mark.asyncio
    async def test_full_listing_takes_the_most_recent(self, monkeypatch):
        start = datetime(2025, 10, 20, 12, 0, tzinfo=timezone.utc)
        session = ScriptedImapSession(
            [(10 + index, start + timedelta(minutes=index), f"m{index}") for index in range(4)]
        )
        monkeypatch.setattr(imap_connector, "open_imap_connection", lambda credentials: session)

        result = await IMAPConnector().list_since({}, None, 2)

        assert {item.provider_message_id for item in result.items} == {"m2@example.com", "m3@example.com"}
        assert result.has_more is False


class TestConnectorFactory:
    """Explicit registry."""

    def test_default_registry(self):
        factory = ConnectorFactory()
        assert isinstance(factory.get(ProviderKind.POLL), IMAPConnector)
        assert factory.get(ProviderKind.POLL) is factory.get(ProviderKind.POLL)
