"""
Email connection and sync models.

This module defines SQLAlchemy models for:
- Email accounts (connected mailboxes and their provider session state)
- Email messages (metadata records, never bodies or attachments)
"""

from sqlalchemy import Column, String, Text, Boolean, TIMESTAMP, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailsync.db.database import Base
import uuid


class EmailAccount(Base):
    """A mailbox connected by a user."""

    __tablename__ = "email_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), nullable=False)

    provider_kind = Column(String(20), nullable=False)  # outlook, gmail, imap
    email_address = Column(String(255), nullable=False)
    connection_state = Column(String(20), nullable=False, default="disconnected")

    # Fernet token of the credential JSON
    encrypted_credentials = Column(Text, nullable=False)

    # Provider session; shape depends on provider_kind
    session_state = Column(JSONB)
    # Denormalized from session_state for webhook lookup
    subscription_ref = Column(String(255))
    # Denormalized Pub/Sub history cursor for the compare-and-set update
    history_cursor = Column(String(64))

    last_synced_at = Column(TIMESTAMP(timezone=True))

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    messages = relationship("EmailMessage", back_populates="account", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("user_id", "email_address", name="uq_user_email"),
        Index("ix_email_accounts_subscription_ref", "subscription_ref"),
        Index("ix_email_accounts_provider_address", "provider_kind", "email_address"),
    )


class EmailMessage(Base):
    """Metadata for one provider message."""

    __tablename__ = "email_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False)
    provider_message_id = Column(String(512), nullable=False)

    sender_email = Column(String(255), nullable=False)
    sender_name = Column(String(255))
    to_recipients = Column(JSONB, default=list)  # Array of {address, name}
    subject = Column(Text, default="")
    preview = Column(String(500), default="")
    has_attachments = Column(Boolean, default=False)
    labels = Column(JSONB, default=list)

    received_at = Column(TIMESTAMP(timezone=True), nullable=False)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("EmailAccount", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("account_id", "provider_message_id", name="uq_account_provider_message"),
        Index("ix_email_messages_account_received", "account_id", "received_at"),
    )
