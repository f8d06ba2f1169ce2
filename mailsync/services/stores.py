"""
Storage and publishing interfaces consumed by the email services.

Concrete implementations live in ``sql_stores`` (PostgreSQL) and
``event_publisher`` (Redis Streams).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from mailsync.services.email_models import Account, Cursor, MessageRecord, ProviderKind


class AccountStore(ABC):
    """Persistence for connected accounts."""

    @abstractmethod
    async def get(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def get_by_subscription_ref(self, subscription_ref: str) -> Optional[Account]:
        """Find the account owning a webhook subscription id."""
        pass

    @abstractmethod
    async def get_by_address(self, provider_kind: ProviderKind, email_address: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def find_by_user_and_address(self, user_id: str, email_address: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def list_active(self, provider_kind: Optional[ProviderKind] = None) -> List[Account]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Account]:
        """All accounts a user connected, oldest first, in any state."""
        pass

    @abstractmethod
    async def save(self, account: Account) -> None:
        pass

    @abstractmethod
    async def delete(self, account_id: str) -> None:
        pass

    async def advance_cursor(self, account_id: str, cursor: Optional[Cursor], synced_at: datetime) -> bool:
        """
        Compare-and-set the account's sync position.

        Stores with real transactions should override this with a
        conditional update.

        Returns:
            bool: True if the stored cursor moved forward.
        """
        account = await self.get(account_id)
        if account is None:
            return False
        previous_synced_at = account.last_synced_at
        advanced = account.apply_cursor(cursor, synced_at)
        if advanced or account.last_synced_at != previous_synced_at:
            await self.save(account)
        return advanced

    async def update_credentials(self, account_id: str, encrypted_credentials: str) -> None:
        """Replace the stored credential blob after a token refresh."""
        account = await self.get(account_id)
        if account is not None:
            account.encrypted_credentials = encrypted_credentials
            await self.save(account)


class MessageStore(ABC):
    """Persistence for message metadata records."""

    @abstractmethod
    async def insert_batch(self, records: List[MessageRecord]) -> List[MessageRecord]:
        """
        Insert records, skipping any whose (account_id, provider_message_id)
        already exists.

        Returns:
            The records that were newly stored.
        """
        pass

    @abstractmethod
    async def exists(self, account_id: str, provider_message_id: str) -> bool:
        pass

    @abstractmethod
    async def count_since(self, account_id: str, since: datetime) -> int:
        pass


class EventPublisher(ABC):
    """Fire-and-forget domain event sink."""

    @abstractmethod
    async def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        pass
