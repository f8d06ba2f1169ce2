from datetime import timedelta
from typing import Optional

from mailsync.config import settings
from mailsync.exceptions import ExternalServiceError, NotFoundError
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.http_client import OAuthRestClient, gmail_client
from mailsync.services.email_models import Account, ProviderKind, PubSubSession
from mailsync.utils.datetime_utils import add_days, expires_within, from_epoch_millis, utc_now

from .base import BaseConnectionManager

# Gmail watches lapse after 7 days unless re-issued
WATCH_LIFETIME_DAYS = 7


class GmailConnectionManager(BaseConnectionManager):
    """Gmail ``users.watch`` registrations publishing to a Pub/Sub topic."""

    provider_kind = ProviderKind.PUBSUB_PUSH

    def __init__(self, cipher: Optional[CredentialCipher] = None, client: Optional[OAuthRestClient] = None,
                 topic_name: Optional[str] = None):
        super().__init__(cipher)
        self.client = client or gmail_client()
        self.topic_name = topic_name or settings.gmail_pubsub_topic

    async def setup(self, account: Account) -> None:
        await self._watch(account)
        self.logger.info(
            f"Gmail watch created for {account.email_address}, "
            f"history_id={account.session.history_cursor}, expires {account.session.watch_expires_at}"
        )

    async def renew(self, account: Account) -> None:
        # Re-issuing users.watch is the documented way to extend it
        await self._watch(account)
        self.logger.info(f"Gmail watch renewed for {account.email_address} until {account.session.watch_expires_at}")

    async def _watch(self, account: Account) -> None:
        async with self.credentials(account) as credentials:
            response = await self.client.request(
                "POST",
                "/users/me/watch",
                credentials,
                data={"topicName": self.topic_name, "labelIds": ["INBOX"], "labelFilterBehavior": "include"},
            )

        if not response.get("historyId"):
            raise ExternalServiceError("Gmail watch response carried no historyId", {"response": response})

        stored = account.session.history_cursor if isinstance(account.session, PubSubSession) else None
        account.session = PubSubSession(
            # Keep an existing cursor so history not yet synced is still listed
            history_cursor=stored or str(response["historyId"]),
            watch_expires_at=from_epoch_millis(response.get("expiration")) or add_days(utc_now(), WATCH_LIFETIME_DAYS),
        )

    async def teardown(self, account: Account) -> None:
        try:
            async with self.credentials(account) as credentials:
                await self.client.request("POST", "/users/me/stop", credentials, data={})
            self.logger.info(f"Gmail watch stopped for {account.email_address}")
        except NotFoundError:
            self.logger.info(f"Gmail watch for {account.email_address} already gone")
        account.session = None

    async def is_healthy(self, account: Account) -> bool:
        session = account.session
        if not isinstance(session, PubSubSession) or session.watch_expires_at is None:
            return False
        threshold = timedelta(hours=settings.gmail_renewal_threshold_hours)
        return not expires_within(session.watch_expires_at, threshold)
