"""
Email Connection Domain Model

Defines connected accounts, their provider-specific session state and the
message metadata records produced by synchronization.

Session state is a closed union: each provider kind has exactly one session
shape, enforced whenever the session is assigned.
"""

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from email.utils import getaddresses, parseaddr
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from mailsync.exceptions import ValidationError
from mailsync.utils.datetime_utils import format_utc_iso, parse_iso, to_utc, utc_now


class ProviderKind(str, Enum):
    """Mail backends, by how they tell us about new mail."""
    WEBHOOK_PUSH = "outlook"
    PUBSUB_PUSH = "gmail"
    POLL = "imap"

    @property
    def supports_push(self) -> bool:
        return self is not ProviderKind.POLL

    @classmethod
    def parse(cls, value: Union[str, "ProviderKind"]) -> "ProviderKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            allowed = ", ".join(kind.value for kind in cls)
            raise ValidationError(f"Unknown provider kind '{value}'. Must be one of: {allowed}")


class ConnectionState(str, Enum):
    """Connection lifecycle of one account."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"
    RENEWING = "renewing"


@dataclass(frozen=True)
class WebhookSession:
    """Graph subscription handle."""
    subscription_id: str
    expires_at: datetime
    webhook_secret: str


@dataclass(frozen=True)
class PubSubSession:
    """Gmail watch and history position."""
    history_cursor: Optional[str]
    watch_expires_at: Optional[datetime]


@dataclass(frozen=True)
class PollSession:
    """Result of an IMAP login and capability check."""
    supports_idle: bool
    last_tested_at: Optional[datetime]


SessionState = Union[WebhookSession, PubSubSession, PollSession]

SESSION_TYPES = {
    ProviderKind.WEBHOOK_PUSH: WebhookSession,
    ProviderKind.PUBSUB_PUSH: PubSubSession,
    ProviderKind.POLL: PollSession,
}


def _check_session_shape(kind: ProviderKind, session: Optional[SessionState]) -> None:
    if session is None:
        return
    expected = SESSION_TYPES[kind]
    if not isinstance(session, expected):
        raise ValidationError(
            f"{type(session).__name__} does not match provider kind '{kind.value}' "
            f"(expected {expected.__name__})"
        )


def session_to_dict(session: Optional[SessionState]) -> Optional[Dict[str, Any]]:
    """Serialize a session for JSON storage."""
    if session is None:
        return None
    if isinstance(session, WebhookSession):
        return {
            "subscription_id": session.subscription_id,
            "expires_at": format_utc_iso(session.expires_at),
            "webhook_secret": session.webhook_secret,
        }
    if isinstance(session, PubSubSession):
        return {
            "history_cursor": session.history_cursor,
            "watch_expires_at": format_utc_iso(session.watch_expires_at) if session.watch_expires_at else None,
        }
    return {
        "supports_idle": session.supports_idle,
        "last_tested_at": format_utc_iso(session.last_tested_at) if session.last_tested_at else None,
    }


def session_from_dict(kind: ProviderKind, data: Optional[Dict[str, Any]]) -> Optional[SessionState]:
    """Rebuild the session for ``kind`` from its stored JSON form."""
    if not data:
        return None
    if kind is ProviderKind.WEBHOOK_PUSH:
        return WebhookSession(
            subscription_id=data["subscription_id"],
            expires_at=parse_iso(data["expires_at"]),
            webhook_secret=data["webhook_secret"],
        )
    if kind is ProviderKind.PUBSUB_PUSH:
        return PubSubSession(
            history_cursor=data.get("history_cursor"),
            watch_expires_at=parse_iso(data.get("watch_expires_at")),
        )
    return PollSession(
        supports_idle=bool(data.get("supports_idle")),
        last_tested_at=parse_iso(data.get("last_tested_at")),
    )


Cursor = Union[str, datetime]


def cursor_is_newer(new: Optional[Cursor], current: Optional[Cursor]) -> bool:
    """
    Check whether ``new`` is strictly ahead of ``current``.

    History ids are compared numerically; timestamp cursors chronologically.
    """
    if new is None:
        return False
    if current is None:
        return True
    if isinstance(new, datetime) and isinstance(current, datetime):
        return to_utc(new) > to_utc(current)
    try:
        return int(new) > int(current)
    except (TypeError, ValueError):
        raise ValidationError(f"Cannot compare cursors {new!r} and {current!r}")


@dataclass
class Account:
    """One connected mailbox."""
    id: str
    user_id: str
    provider_kind: ProviderKind
    email_address: str
    encrypted_credentials: str
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    last_synced_at: Optional[datetime] = None
    session: Optional[SessionState] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "session":
            _check_session_shape(self.provider_kind, value)
        super().__setattr__(name, value)

    @classmethod
    def create(
        cls,
        user_id: str,
        provider_kind: ProviderKind,
        email_address: str,
        encrypted_credentials: str,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider_kind=provider_kind,
            email_address=email_address.strip().lower(),
            encrypted_credentials=encrypted_credentials,
        )

    @property
    def is_active(self) -> bool:
        return self.connection_state in (ConnectionState.ACTIVE, ConnectionState.RENEWING)

    def belongs_to(self, user_id: str) -> bool:
        return self.user_id == user_id

    # State transitions

    def begin_connecting(self) -> None:
        self._transition(ConnectionState.CONNECTING)

    def activate(self) -> None:
        self._transition(ConnectionState.ACTIVE)

    def begin_renewing(self) -> None:
        self._transition(ConnectionState.RENEWING)

    def deactivate(self) -> None:
        self._transition(ConnectionState.DISCONNECTED)

    def _transition(self, state: ConnectionState) -> None:
        self.connection_state = state
        self.updated_at = utc_now()

    # Session helpers

    @property
    def subscription_ref(self) -> Optional[str]:
        if isinstance(self.session, WebhookSession):
            return self.session.subscription_id
        return None

    def subscription_expires_at(self) -> Optional[datetime]:
        if isinstance(self.session, WebhookSession):
            return self.session.expires_at
        if isinstance(self.session, PubSubSession):
            return self.session.watch_expires_at
        return None

    def delta_cursor(self) -> Optional[Cursor]:
        """Cursor for incremental listing, or None when only a full listing is possible."""
        if self.provider_kind is ProviderKind.PUBSUB_PUSH:
            if isinstance(self.session, PubSubSession):
                return self.session.history_cursor
            return None
        return self.last_synced_at

    def apply_cursor(self, cursor: Optional[Cursor], synced_at: datetime) -> bool:
        """
        Move the sync position forward.

        Returns:
            bool: True if the cursor moved. An older cursor leaves it untouched.
        """
        advanced = False
        if self.provider_kind is ProviderKind.PUBSUB_PUSH:
            session = self.session if isinstance(self.session, PubSubSession) else PubSubSession(None, None)
            if cursor is not None and cursor_is_newer(str(cursor), session.history_cursor):
                self.session = replace(session, history_cursor=str(cursor))
                advanced = True
            if cursor_is_newer(synced_at, self.last_synced_at):
                self.last_synced_at = synced_at
        else:
            target = cursor if isinstance(cursor, datetime) else synced_at
            if cursor_is_newer(target, self.last_synced_at):
                self.last_synced_at = target
                advanced = True

        if advanced:
            self.updated_at = utc_now()
        return advanced


_ADDRESS_RE = re.compile(r"^[^@\s<>\"]+@[^@\s<>\"]+$")


@dataclass(frozen=True)
class EmailAddress:
    """Validated mailbox address with optional display name."""
    address: str
    name: Optional[str] = None

    @classmethod
    def create(cls, address: str, name: Optional[str] = None) -> "EmailAddress":
        cleaned = (address or "").strip()
        if not _ADDRESS_RE.match(cleaned):
            raise ValidationError(f"Invalid email address: {address!r}")
        return cls(address=cleaned.lower(), name=(name or "").strip() or None)

    @classmethod
    def parse(cls, header: str) -> "EmailAddress":
        """Parse ``"Jane Doe <jane@example.com>"`` or a bare address."""
        name, address = parseaddr(header or "")
        return cls.create(address, name)

    @classmethod
    def parse_list(cls, headers: List[str]) -> List["EmailAddress"]:
        """Parse recipient headers, skipping entries without a usable address."""
        parsed = []
        for name, address in getaddresses(headers or []):
            if address and _ADDRESS_RE.match(address.strip()):
                parsed.append(cls.create(address, name))
        return parsed

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"address": self.address, "name": self.name}


PREVIEW_MAX_LENGTH = 500


@dataclass
class MessageRecord:
    """Stored metadata for one provider message. Bodies are never stored."""
    id: str
    account_id: str
    provider_message_id: str
    sender: EmailAddress
    recipients: List[EmailAddress]
    subject: str
    preview: str
    has_attachments: bool
    timestamp: datetime
    labels: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def idempotency_key(self) -> tuple:
        return (self.account_id, self.provider_message_id)

    def to_event_payload(self, provider_kind: ProviderKind) -> Dict[str, Any]:
        return {
            "email_id": self.id,
            "account_id": self.account_id,
            "provider": provider_kind.value,
            "provider_message_id": self.provider_message_id,
            "from": self.sender.to_dict(),
            "to": [recipient.to_dict() for recipient in self.recipients],
            "subject": self.subject,
            "preview": self.preview,
            "has_attachments": self.has_attachments,
            "timestamp": format_utc_iso(self.timestamp),
            "labels": list(self.labels),
        }
