"""Shared in-memory collaborators for the email sync tests."""

import copy
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from mailsync.exceptions import NotFoundError
from mailsync.services.connection_managers import BaseConnectionManager, ConnectionManagerRegistry
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors import ConnectorFactory
from mailsync.services.email_connectors.base_connector import (
    BaseEmailConnector,
    ListResult,
    MessageContent,
    MessageMetadata,
)
from mailsync.services.email_models import (
    Account,
    ConnectionState,
    PollSession,
    ProviderKind,
    PubSubSession,
    WebhookSession,
)
from mailsync.services.stores import AccountStore, EventPublisher, MessageStore
from mailsync.utils.datetime_utils import utc_now

TEST_KEY = "test-credentials-key"


class InMemoryAccountStore(AccountStore):
    """Stores copies so callers cannot mutate persisted state by accident."""

    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self.deleted: List[str] = []

    async def get(self, account_id: str) -> Optional[Account]:
        account = self.accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def get_by_subscription_ref(self, subscription_ref: str) -> Optional[Account]:
        for account in self.accounts.values():
            if account.subscription_ref == subscription_ref:
                return copy.deepcopy(account)
        return None

    async def get_by_address(self, provider_kind: ProviderKind, email_address: str) -> Optional[Account]:
        matches = [
            account for account in self.accounts.values()
            if account.provider_kind is provider_kind and account.email_address == email_address.lower()
        ]
        matches.sort(key=lambda account: not account.is_active)
        return copy.deepcopy(matches[0]) if matches else None

    async def find_by_user_and_address(self, user_id: str, email_address: str) -> Optional[Account]:
        for account in self.accounts.values():
            if account.user_id == user_id and account.email_address == email_address.lower():
                return copy.deepcopy(account)
        return None

    async def list_active(self, provider_kind: Optional[ProviderKind] = None) -> List[Account]:
        return [
            copy.deepcopy(account) for account in self.accounts.values()
            if account.is_active and (provider_kind is None or account.provider_kind is provider_kind)
        ]

    async def list_for_user(self, user_id: str) -> List[Account]:
        owned = [account for account in self.accounts.values() if account.user_id == user_id]
        return [copy.deepcopy(account) for account in sorted(owned, key=lambda account: account.created_at)]

    async def save(self, account: Account) -> None:
        self.accounts[account.id] = copy.deepcopy(account)

    async def delete(self, account_id: str) -> None:
        self.accounts.pop(account_id, None)
        self.deleted.append(account_id)


class InMemoryMessageStore(MessageStore):
    def __init__(self):
        self.records = {}

    async def insert_batch(self, records):
        inserted = []
        for record in records:
            if record.idempotency_key in self.records:
                continue
            self.records[record.idempotency_key] = record
            inserted.append(record)
        return inserted

    async def exists(self, account_id: str, provider_message_id: str) -> bool:
        return (account_id, provider_message_id) in self.records

    async def count_since(self, account_id: str, since: datetime) -> int:
        return sum(
            1 for record in self.records.values()
            if record.account_id == account_id and record.timestamp >= since
        )


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events: List[tuple] = []

    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        self.events.append((topic, payload))


class FakeConnector(BaseEmailConnector):
    """Serves a scripted mailbox."""

    def __init__(self, provider_kind: ProviderKind = ProviderKind.WEBHOOK_PUSH):
        super().__init__()
        self.provider_kind = provider_kind
        self.mailbox: List[MessageMetadata] = []
        self.next_cursor = None
        self.cursor_error: Optional[Exception] = None
        self.error: Optional[Exception] = None
        self.fetchable: Dict[str, MessageMetadata] = {}
        self.cursors_seen: List[Any] = []
        self.has_more = False
        self.fetched_ids: List[str] = []

    async def list_since(self, credentials, cursor=None, limit=50) -> ListResult:
        self.cursors_seen.append(cursor)
        if self.error is not None:
            raise self.error
        if cursor is not None and self.cursor_error is not None:
            raise self.cursor_error
        items = [
            message for message in self.mailbox
            if not isinstance(cursor, datetime) or message.timestamp >= cursor
        ]
        return ListResult(items=items[:limit], next_cursor=self.next_cursor, has_more=self.has_more)

    async def fetch(self, credentials, message_id) -> MessageContent:
        self.fetched_ids.append(message_id)
        if message_id not in self.fetchable:
            raise NotFoundError(f"Message {message_id} not found")
        return MessageContent(metadata=self.fetchable[message_id])


class FakeConnectionManager(BaseConnectionManager):
    """Records calls and installs a plausible session."""

    def __init__(self, provider_kind: ProviderKind, cipher: CredentialCipher):
        super().__init__(cipher)
        self.provider_kind = provider_kind
        self.setup_error: Optional[Exception] = None
        self.renew_error: Optional[Exception] = None
        self.teardown_error: Optional[Exception] = None
        self.healthy = True
        self.calls: List[tuple] = []

    def _session(self):
        expires = utc_now() + timedelta(days=3)
        if self.provider_kind is ProviderKind.WEBHOOK_PUSH:
            return WebhookSession(subscription_id="sub-new", expires_at=expires, webhook_secret="s3cret")
        if self.provider_kind is ProviderKind.PUBSUB_PUSH:
            return PubSubSession(history_cursor="1000", watch_expires_at=expires)
        return PollSession(supports_idle=True, last_tested_at=utc_now())

    async def setup(self, account: Account) -> None:
        self.calls.append(("setup", account.id))
        if self.setup_error is not None:
            raise self.setup_error
        account.session = self._session()

    async def renew(self, account: Account) -> None:
        self.calls.append(("renew", account.id))
        if self.renew_error is not None:
            raise self.renew_error
        account.session = self._session()

    async def teardown(self, account: Account) -> None:
        self.calls.append(("teardown", account.id))
        if self.teardown_error is not None:
            raise self.teardown_error
        account.session = None

    async def is_healthy(self, account: Account) -> bool:
        return self.healthy


class RecordingQueue:
    """Captures enqueued jobs without running them."""

    def __init__(self):
        self.jobs = []

    async def enqueue(self, job):
        self.jobs.append(job)
        return job.job_id

    async def stats(self):
        return {"backend": "recording", "pending": len(self.jobs)}

    async def failed_jobs(self):
        return []

    async def start(self):
        pass

    async def stop(self):
        pass


def metadata(message_id: str, timestamp: datetime, sender: str = "Alice <alice@example.com>",
             subject: str = "Hello") -> MessageMetadata:
    return MessageMetadata(
        provider_message_id=message_id,
        from_header=sender,
        to_headers=["bob@example.com"],
        subject=subject,
        snippet=f"Preview of {subject}",
        timestamp=timestamp,
        labels=["INBOX"],
    )


@pytest.fixture
def cipher():
    return CredentialCipher(TEST_KEY)


@pytest.fixture
def account_store():
    return InMemoryAccountStore()


@pytest.fixture
def message_store():
    return InMemoryMessageStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def managers(cipher):
    return ConnectionManagerRegistry({kind: FakeConnectionManager(kind, cipher) for kind in ProviderKind})


@pytest.fixture
def outlook_connector():
    return FakeConnector(ProviderKind.WEBHOOK_PUSH)


@pytest.fixture
def gmail_connector():
    return FakeConnector(ProviderKind.PUBSUB_PUSH)


@pytest.fixture
def connectors(outlook_connector, gmail_connector):
    return ConnectorFactory({
        ProviderKind.WEBHOOK_PUSH: outlook_connector,
        ProviderKind.PUBSUB_PUSH: gmail_connector,
        ProviderKind.POLL: FakeConnector(ProviderKind.POLL),
    })


@pytest.fixture
def make_account(account_store, cipher):
    """Persist an ACTIVE account of the given kind."""

    async def _make(kind: ProviderKind = ProviderKind.WEBHOOK_PUSH, email_address: str = "bob@example.com",
                    session=None, last_synced_at=None, user_id: str = "user-1",
                    credentials: Optional[Dict[str, Any]] = None) -> Account:
        account = Account.create(user_id, kind, email_address, cipher.encrypt(credentials or {"access_token": "token"}))
        account.connection_state = ConnectionState.ACTIVE
        account.session = session
        account.last_synced_at = last_synced_at
        await account_store.save(account)
        return account

    return _make


class InMemoryContentCache:
    def __init__(self):
        self.entries: Dict[tuple, MessageContent] = {}

    async def get(self, account_id: str, message_id: str) -> Optional[MessageContent]:
        return self.entries.get((account_id, message_id))

    async def set(self, account_id: str, message_id: str, content: MessageContent) -> None:
        self.entries[(account_id, message_id)] = content


@pytest.fixture
def content_cache():
    return InMemoryContentCache()
