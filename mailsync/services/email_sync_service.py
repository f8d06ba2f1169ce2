"""
Email Sync Service

Turns one sync request into a metadata listing, an idempotent batch insert, a
forward-only cursor update and one ``email.received`` event per new record.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mailsync.config import settings
from mailsync.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    CursorNotFoundError,
    NotFoundError,
    ValidationError,
)
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.base_connector import ListResult, MessageMetadata
from mailsync.services.email_connectors.connector_factory import ConnectorFactory
from mailsync.services.email_models import (
    PREVIEW_MAX_LENGTH,
    Account,
    EmailAddress,
    MessageRecord,
)
from mailsync.services.event_publisher import EMAIL_RECEIVED
from mailsync.services.stores import AccountStore, EventPublisher, MessageStore
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("email_sync_service")


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    account_id: str
    mode: str  # "full" or "delta"
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    failed_items: int = 0
    cursor_advanced: bool = False
    fell_back: bool = False
    has_more: bool = False
    inserted_ids: List[str] = field(default_factory=list)

    @property
    def needs_follow_up(self) -> bool:
        """The listing was cut off and the cursor moved, so another pass will make progress."""
        return self.has_more and self.cursor_advanced

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "mode": self.mode,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "failed_items": self.failed_items,
            "cursor_advanced": self.cursor_advanced,
            "fell_back": self.fell_back,
            "has_more": self.has_more,
        }


def build_message_record(account_id: str, metadata: MessageMetadata) -> MessageRecord:
    """
    Convert provider metadata into a record.

    Raises:
        ValidationError: The sender is unusable or the timestamp is missing.
    """
    if not metadata.provider_message_id:
        raise ValidationError("Message has no provider id")
    if metadata.timestamp is None:
        raise ValidationError(f"Message {metadata.provider_message_id} has no timestamp")

    return MessageRecord(
        id=str(uuid.uuid4()),
        account_id=account_id,
        provider_message_id=metadata.provider_message_id,
        sender=EmailAddress.parse(metadata.from_header),
        recipients=EmailAddress.parse_list(metadata.to_headers),
        subject=metadata.subject or "",
        preview=(metadata.snippet or "")[:PREVIEW_MAX_LENGTH],
        has_attachments=metadata.has_attachments,
        timestamp=metadata.timestamp,
        labels=list(metadata.labels),
    )


class EmailSyncService:
    """Synchronizes message metadata for one account at a time."""

    def __init__(
        self,
        account_store: AccountStore,
        message_store: MessageStore,
        publisher: EventPublisher,
        connectors: Optional[ConnectorFactory] = None,
        cipher: Optional[CredentialCipher] = None,
        batch_size: Optional[int] = None,
    ):
        self.account_store = account_store
        self.message_store = message_store
        self.publisher = publisher
        self.connectors = connectors or ConnectorFactory()
        self.cipher = cipher or CredentialCipher()
        self.batch_size = batch_size or settings.email_sync_batch_size

    async def sync_account(
        self,
        account_id: str,
        full_sync: bool = False,
        message_hint: Optional[str] = None,
    ) -> SyncResult:
        """
        Run one sync pass.

        Args:
            account_id: Account to sync
            full_sync: Ignore the stored cursor and list the most recent messages
            message_hint: Provider id of a message a notification pointed at

        Raises:
            AccountNotFoundError / AccountInactiveError: Nothing to sync
            AuthenticationError: Credential needs re-authentication
            RateLimitError / ExternalServiceError: Retry later
        """
        started = time.monotonic()
        account = await self.account_store.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if not account.is_active:
            raise AccountInactiveError(f"Account {account_id} is not active", {"state": account.connection_state.value})

        credentials = self.cipher.decrypt(account.encrypted_credentials)
        snapshot = dict(credentials)
        connector = self.connectors.get(account.provider_kind)

        cursor = None if full_sync else account.delta_cursor()
        result = SyncResult(account_id=account.id, mode="full" if cursor is None else "delta")

        try:
            if cursor is None:
                listing = await connector.list_since(credentials, None, self.batch_size)
            else:
                try:
                    listing = await connector.list_since(credentials, cursor, self.batch_size)
                except CursorNotFoundError:
                    logger.warning(f"Cursor {cursor} for account {account.id} no longer resolvable, running a full listing")
                    result.fell_back = True
                    result.mode = "full"
                    listing = await connector.list_since(credentials, None, self.batch_size)

            await self._include_hinted_message(account, connector, credentials, listing, message_hint)
        finally:
            if credentials != snapshot:
                await self.account_store.update_credentials(account.id, self.cipher.encrypt(credentials))

        result.fetched = len(listing.items)
        result.has_more = listing.has_more
        records = []
        for metadata in listing.items:
            try:
                records.append(build_message_record(account.id, metadata))
            except ValidationError as e:
                result.failed_items += 1
                logger.warning(f"Skipping message {metadata.provider_message_id} for account {account.id}: {e.message}")

        inserted = await self.message_store.insert_batch(records) if records else []
        result.inserted = len(inserted)
        result.skipped = len(records) - len(inserted)
        result.inserted_ids = [record.id for record in inserted]

        result.cursor_advanced = await self.account_store.advance_cursor(account.id, listing.next_cursor, utc_now())

        for record in inserted:
            await self._publish(record, account)

        provider = account.provider_kind.value
        MetricsCollector.record_messages_ingested(provider, result.inserted)
        MetricsCollector.record_sync_duration(provider, time.monotonic() - started)
        logger.info(
            f"Synced account {account.id} ({provider}, {result.mode}): fetched={result.fetched} "
            f"inserted={result.inserted} skipped={result.skipped} failed={result.failed_items} "
            f"cursor_advanced={result.cursor_advanced} has_more={result.has_more}"
        )
        return result

    async def _include_hinted_message(self, account: Account, connector, credentials: Dict[str, Any],
                                      listing: ListResult, message_hint: Optional[str]) -> None:
        """Fetch the notified message directly when the listing missed it."""
        if not message_hint:
            return
        if any(item.provider_message_id == message_hint for item in listing.items):
            return
        if await self.message_store.exists(account.id, message_hint):
            return
        try:
            content = await connector.fetch(credentials, message_hint)
        except NotFoundError:
            logger.info(f"Hinted message {message_hint} for account {account.id} no longer exists")
            return
        listing.items.append(content.metadata)

    async def _publish(self, record: MessageRecord, account: Account) -> None:
        try:
            await self.publisher.publish(EMAIL_RECEIVED, record.to_event_payload(account.provider_kind))
        except Exception as e:
            # Events are fire-and-forget; the record is already stored
            logger.error(f"Failed to publish {EMAIL_RECEIVED} for message {record.id}: {e}")
