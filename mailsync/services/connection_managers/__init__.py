"""
Connection managers: per-provider subscription lifecycle.
"""

from typing import Dict, Optional

from mailsync.exceptions import ValidationError
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_models import ProviderKind

from .base import BaseConnectionManager
from .gmail import GmailConnectionManager
from .imap import ImapConnectionManager
from .outlook import OutlookConnectionManager


class ConnectionManagerRegistry:
    """Explicit ``ProviderKind`` -> manager mapping."""

    def __init__(self, managers: Dict[ProviderKind, BaseConnectionManager]):
        self._managers = dict(managers)

    @classmethod
    def default(cls, cipher: Optional[CredentialCipher] = None) -> "ConnectionManagerRegistry":
        cipher = cipher or CredentialCipher()
        return cls({
            ProviderKind.WEBHOOK_PUSH: OutlookConnectionManager(cipher),
            ProviderKind.PUBSUB_PUSH: GmailConnectionManager(cipher),
            ProviderKind.POLL: ImapConnectionManager(cipher),
        })

    def get(self, provider_kind: ProviderKind) -> BaseConnectionManager:
        manager = self._managers.get(provider_kind)
        if manager is None:
            raise ValidationError(f"No connection manager for provider kind '{provider_kind}'")
        return manager


__all__ = [
    "BaseConnectionManager",
    "ConnectionManagerRegistry",
    "GmailConnectionManager",
    "ImapConnectionManager",
    "OutlookConnectionManager",
]
