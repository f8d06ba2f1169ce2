from typing import Optional

from mailsync.exceptions import EmailSyncError
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.imap_connector import IMAPConnector
from mailsync.services.email_models import Account, PollSession, ProviderKind
from mailsync.utils.datetime_utils import utc_now

from .base import BaseConnectionManager


class ImapConnectionManager(BaseConnectionManager):
    """
    IMAP has nothing to subscribe to: setup proves the credentials work and
    records whether the server supports IDLE.
    """

    provider_kind = ProviderKind.POLL

    def __init__(self, cipher: Optional[CredentialCipher] = None, connector: Optional[IMAPConnector] = None):
        super().__init__(cipher)
        self.connector = connector or IMAPConnector()

    async def setup(self, account: Account) -> None:
        async with self.credentials(account) as credentials:
            capabilities = await self.connector.check_capabilities(credentials)
        account.session = PollSession(supports_idle=capabilities.get("IDLE", False), last_tested_at=utc_now())
        self.logger.info(f"IMAP login verified for {account.email_address}, IDLE={account.session.supports_idle}")

    async def renew(self, account: Account) -> None:
        await self.setup(account)

    async def teardown(self, account: Account) -> None:
        # Nothing registered remotely; the IDLE monitor is stopped by the caller
        self.logger.info(f"IMAP account {account.email_address} released")

    async def is_healthy(self, account: Account) -> bool:
        try:
            async with self.credentials(account) as credentials:
                await self.connector.check_capabilities(credentials)
            return True
        except EmailSyncError as e:
            self.logger.warning(f"IMAP health check failed for {account.email_address}: {e}")
            return False
