"""
Message Content Service

On-demand reads of a single message. Content is fetched from the provider,
cached briefly in Redis and never written to the database.
"""

import json
from dataclasses import asdict
from typing import Any, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from mailsync.config import settings
from mailsync.exceptions import AccountInactiveError, AccountNotFoundError, PermissionDeniedError
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.base_connector import (
    AttachmentDescriptor,
    MessageContent,
    MessageMetadata,
)
from mailsync.services.email_connectors.connector_factory import ConnectorFactory
from mailsync.services.stores import AccountStore
from mailsync.utils.datetime_utils import parse_iso
from mailsync.utils.logging import get_logger

logger = get_logger("message_content")


def content_to_dict(content: MessageContent) -> Dict[str, Any]:
    data = asdict(content)
    timestamp = content.metadata.timestamp
    data["metadata"]["timestamp"] = timestamp.isoformat() if timestamp else None
    return data


def content_from_dict(data: Dict[str, Any]) -> MessageContent:
    metadata = dict(data["metadata"])
    metadata["timestamp"] = parse_iso(metadata.get("timestamp"))
    return MessageContent(
        metadata=MessageMetadata(**metadata),
        body_text=data.get("body_text"),
        body_html=data.get("body_html"),
        attachments=[AttachmentDescriptor(**item) for item in data.get("attachments") or []],
    )


class RedisContentCache:
    """Short-lived message content cache. Cache errors never fail a read."""

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or settings.message_cache_ttl_seconds
        self.redis: Optional[redis.Redis] = None

    def _client(self) -> redis.Redis:
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
        return self.redis

    @staticmethod
    def _key(account_id: str, message_id: str) -> str:
        return f"email_content:{account_id}:{message_id}"

    async def get(self, account_id: str, message_id: str) -> Optional[MessageContent]:
        try:
            raw = await self._client().get(self._key(account_id, message_id))
        except RedisError as e:
            logger.warning(f"Content cache read failed for {account_id}/{message_id}: {e}")
            return None
        if raw is None:
            return None
        try:
            return content_from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cached content for {account_id}/{message_id}: {e}")
            return None

    async def set(self, account_id: str, message_id: str, content: MessageContent) -> None:
        try:
            await self._client().setex(
                self._key(account_id, message_id), self.ttl_seconds, json.dumps(content_to_dict(content))
            )
        except RedisError as e:
            logger.warning(f"Content cache write failed for {account_id}/{message_id}: {e}")

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.close()
            self.redis = None


class MessageContentService:
    """Reads full message content for an account's owner."""

    def __init__(
        self,
        account_store: AccountStore,
        connectors: Optional[ConnectorFactory] = None,
        cipher: Optional[CredentialCipher] = None,
        cache: Optional[RedisContentCache] = None,
    ):
        self.account_store = account_store
        self.connectors = connectors or ConnectorFactory()
        self.cipher = cipher or CredentialCipher()
        self.cache = cache

    async def get_message(self, account_id: str, message_id: str, user_id: Optional[str] = None) -> MessageContent:
        """
        Fetch one message by its provider id.

        Raises:
            AccountNotFoundError: Unknown account
            PermissionDeniedError: Account belongs to another user
            AccountInactiveError: Account is not connected
            NotFoundError: The provider no longer has the message
            AuthenticationError / ExternalServiceError: Provider read failed
        """
        account = await self.account_store.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if user_id is not None and not account.belongs_to(user_id):
            raise PermissionDeniedError(f"Account {account_id} belongs to another user")
        if not account.is_active:
            raise AccountInactiveError(f"Account {account_id} is not active", {"state": account.connection_state.value})

        if self.cache is not None:
            cached = await self.cache.get(account.id, message_id)
            if cached is not None:
                logger.debug(f"Content cache hit for {account.id}/{message_id}")
                return cached

        credentials = self.cipher.decrypt(account.encrypted_credentials)
        snapshot = dict(credentials)
        try:
            content = await self.connectors.get(account.provider_kind).fetch(credentials, message_id)
        finally:
            if credentials != snapshot:
                await self.account_store.update_credentials(account.id, self.cipher.encrypt(credentials))

        if self.cache is not None:
            await self.cache.set(account.id, message_id, content)
        return content
