"""
Base Connection Manager

A connection manager owns the push-subscription (or poll-capability)
lifecycle of one provider kind. Every operation takes the account, talks to
the provider and records the outcome in ``account.session``. Persisting the
account is the caller's job.
"""

import contextlib
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_models import Account, ProviderKind
from mailsync.utils.logging import get_logger


class BaseConnectionManager(ABC):
    """Subscription lifecycle for one provider kind."""

    provider_kind: ProviderKind

    def __init__(self, cipher: Optional[CredentialCipher] = None):
        self.cipher = cipher or CredentialCipher()
        self.logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def setup(self, account: Account) -> None:
        """
        Create the provider-side subscription and store it on the account.

        Raises:
            AuthenticationError: Credential rejected
            ExternalServiceError: Provider unreachable or refused the request
        """
        pass

    @abstractmethod
    async def renew(self, account: Account) -> None:
        """Extend the subscription, recreating it if the provider lost it."""
        pass

    @abstractmethod
    async def teardown(self, account: Account) -> None:
        """Remove the provider-side subscription. Already-gone counts as done."""
        pass

    @abstractmethod
    async def is_healthy(self, account: Account) -> bool:
        pass

    @contextlib.asynccontextmanager
    async def credentials(self, account: Account) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield decrypted credentials; a refreshed access token is written back
        onto the account when the block exits.
        """
        credentials = self.cipher.decrypt(account.encrypted_credentials)
        snapshot = dict(credentials)
        try:
            yield credentials
        finally:
            if credentials != snapshot:
                account.encrypted_credentials = self.cipher.encrypt(credentials)
                self.logger.debug(f"Stored refreshed credentials for account {account.id}")
