import secrets
from dataclasses import replace
from datetime import timedelta
from typing import Optional

from mailsync.config import settings
from mailsync.exceptions import EmailSyncError, ExternalServiceError, NotFoundError
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.http_client import OAuthRestClient, graph_client
from mailsync.services.email_models import Account, ProviderKind, WebhookSession
from mailsync.utils.datetime_utils import format_utc_iso, is_expired, parse_iso, utc_now

from .base import BaseConnectionManager

# Graph caps mail subscriptions at 4230 minutes; renew well before that
MAX_SUBSCRIPTION_LIFETIME = timedelta(minutes=4230)
EXPIRY_SAFETY_BUFFER = timedelta(hours=1)

INBOX_RESOURCE = "/me/mailFolders('inbox')/messages"


def subscription_expiry():
    return utc_now() + MAX_SUBSCRIPTION_LIFETIME - EXPIRY_SAFETY_BUFFER


class OutlookConnectionManager(BaseConnectionManager):
    """Graph change-notification subscriptions on the inbox."""

    provider_kind = ProviderKind.WEBHOOK_PUSH

    def __init__(self, cipher: Optional[CredentialCipher] = None, client: Optional[OAuthRestClient] = None,
                 webhook_base_url: Optional[str] = None):
        super().__init__(cipher)
        self.client = client or graph_client()
        self.webhook_base_url = (webhook_base_url or settings.webhook_base_url).rstrip("/")

    @property
    def notification_url(self) -> str:
        return f"{self.webhook_base_url}/webhooks/{ProviderKind.WEBHOOK_PUSH.value}"

    async def setup(self, account: Account) -> None:
        webhook_secret = secrets.token_hex(32)
        async with self.credentials(account) as credentials:
            subscription = await self.client.request(
                "POST",
                "/subscriptions",
                credentials,
                data={
                    "changeType": "created",
                    "notificationUrl": self.notification_url,
                    "resource": INBOX_RESOURCE,
                    "expirationDateTime": format_utc_iso(subscription_expiry()),
                    "clientState": webhook_secret,
                },
            )

        if not subscription.get("id"):
            raise ExternalServiceError("Graph returned a subscription without an id", {"response": subscription})

        account.session = WebhookSession(
            subscription_id=subscription["id"],
            expires_at=parse_iso(subscription.get("expirationDateTime")) or subscription_expiry(),
            webhook_secret=webhook_secret,
        )
        self.logger.info(
            f"Outlook subscription {subscription['id']} created for {account.email_address}, "
            f"expires {account.session.expires_at}"
        )

    async def renew(self, account: Account) -> None:
        session = account.session
        if not isinstance(session, WebhookSession) or not session.subscription_id:
            self.logger.warning(f"No subscription stored for {account.email_address}, creating a new one")
            await self.setup(account)
            return

        try:
            async with self.credentials(account) as credentials:
                updated = await self.client.request(
                    "PATCH",
                    f"/subscriptions/{session.subscription_id}",
                    credentials,
                    data={"expirationDateTime": format_utc_iso(subscription_expiry())},
                )
        except NotFoundError:
            self.logger.warning(f"Subscription {session.subscription_id} not found, creating a new one")
            await self.setup(account)
            return

        account.session = replace(
            session,
            expires_at=parse_iso(updated.get("expirationDateTime")) or subscription_expiry(),
        )
        self.logger.info(f"Outlook subscription {session.subscription_id} renewed until {account.session.expires_at}")

    async def teardown(self, account: Account) -> None:
        session = account.session
        if not isinstance(session, WebhookSession):
            self.logger.info(f"No subscription for {account.email_address}, nothing to tear down")
            return

        try:
            async with self.credentials(account) as credentials:
                await self.client.request("DELETE", f"/subscriptions/{session.subscription_id}", credentials)
            self.logger.info(f"Outlook subscription {session.subscription_id} deleted")
        except NotFoundError:
            self.logger.info(f"Subscription {session.subscription_id} already deleted or expired")
        account.session = None

    async def is_healthy(self, account: Account) -> bool:
        session = account.session
        if not isinstance(session, WebhookSession):
            return False
        try:
            async with self.credentials(account) as credentials:
                subscription = await self.client.request(
                    "GET", f"/subscriptions/{session.subscription_id}", credentials
                )
        except EmailSyncError as e:
            self.logger.warning(f"Health check failed for {account.email_address}: {e}")
            return False
        expiration = parse_iso(subscription.get("expirationDateTime"))
        return expiration is not None and not is_expired(expiration)
