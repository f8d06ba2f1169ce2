from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from mailsync.services.email_connectors.base_connector import MessageContent
from mailsync.services.email_models import Account


class ConnectAccountRequest(BaseModel):
    provider_kind: str = Field(..., description="outlook, gmail or imap")
    email_address: str
    credentials: Dict[str, Any] = Field(..., description="OAuth tokens or IMAP login")


class SyncRequest(BaseModel):
    full_sync: bool = False


class AccountResponse(BaseModel):
    id: str
    user_id: str
    provider_kind: str
    email_address: str
    connection_state: str
    is_active: bool
    last_synced_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        # Credentials and webhook secrets never leave the service
        return cls(
            id=account.id,
            user_id=account.user_id,
            provider_kind=account.provider_kind.value,
            email_address=account.email_address,
            connection_state=account.connection_state.value,
            is_active=account.is_active,
            last_synced_at=account.last_synced_at,
            subscription_expires_at=account.subscription_expires_at(),
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class SyncJobResponse(BaseModel):
    job_id: str
    account_id: str
    full_sync: bool


class AttachmentResponse(BaseModel):
    attachment_id: str
    filename: str
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None


class MessageContentResponse(BaseModel):
    provider_message_id: str
    from_header: str
    to: List[str] = []
    subject: str = ""
    timestamp: Optional[datetime] = None
    labels: List[str] = []
    has_attachments: bool = False
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[AttachmentResponse] = []

    @classmethod
    def from_content(cls, content: MessageContent) -> "MessageContentResponse":
        metadata = content.metadata
        return cls(
            provider_message_id=metadata.provider_message_id,
            from_header=metadata.from_header,
            to=list(metadata.to_headers),
            subject=metadata.subject,
            timestamp=metadata.timestamp,
            labels=list(metadata.labels),
            has_attachments=metadata.has_attachments or bool(content.attachments),
            body_text=content.body_text,
            body_html=content.body_html,
            attachments=[
                AttachmentResponse(
                    attachment_id=item.attachment_id,
                    filename=item.filename,
                    content_type=item.content_type,
                    size_bytes=item.size_bytes,
                )
                for item in content.attachments
            ],
        )
