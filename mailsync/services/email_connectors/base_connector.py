"""
Base Email Connector

Defines the interface shared by all provider adapters. Adapters only read:
they list message metadata since a cursor and fetch a single message on
demand. Push-subscription lifecycle lives in the connection managers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Union
from datetime import datetime

from mailsync.services.email_models import ProviderKind
from mailsync.utils.logging import get_logger


@dataclass
class MessageMetadata:
    """Provider-neutral message metadata as returned by a listing."""
    provider_message_id: str
    from_header: str
    to_headers: List[str] = field(default_factory=list)
    subject: str = ""
    snippet: str = ""
    has_attachments: bool = False
    timestamp: Optional[datetime] = None
    labels: List[str] = field(default_factory=list)


@dataclass
class AttachmentDescriptor:
    """Attachment reference; content is never downloaded by the sync path."""
    attachment_id: str
    filename: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None


@dataclass
class MessageContent:
    """Full message for on-demand reads. Never persisted."""
    metadata: MessageMetadata
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentDescriptor] = field(default_factory=list)


@dataclass
class ListResult:
    """One listing pass: the items plus the cursor to resume from."""
    items: List[MessageMetadata]
    next_cursor: Optional[Union[str, datetime]] = None
    # More messages are waiting past next_cursor
    has_more: bool = False


class BaseEmailConnector(ABC):
    """
    Abstract base class for all provider adapters.

    Errors are raised from the ``mailsync.exceptions`` taxonomy so the sync
    engine and job queue can decide between retrying, falling back and
    parking a job.
    """

    provider_kind: ProviderKind

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def list_since(
        self,
        credentials: Dict[str, Any],
        cursor: Optional[Union[str, datetime]] = None,
        limit: int = 50
    ) -> ListResult:
        """
        List message metadata newer than ``cursor``.

        Args:
            credentials: Decrypted provider credentials
            cursor: Provider cursor from the previous run, or None for a full listing
            limit: Upper bound on returned items

        Returns:
            ListResult with the items and the cursor to store afterwards

        Raises:
            AuthenticationError: Credential rejected
            CursorNotFoundError: Cursor too old to resolve
            RateLimitError / ExternalServiceError: Provider trouble
        """
        pass

    @abstractmethod
    async def fetch(self, credentials: Dict[str, Any], message_id: str) -> MessageContent:
        """
        Retrieve a single message with its body.

        Raises:
            NotFoundError: Message no longer exists
        """
        pass
