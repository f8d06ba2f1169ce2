"""
Webhook Ingestion Service

Turns provider push notifications into sync jobs. Handlers never run a sync
themselves; they authenticate the notification, drop stale or unknown ones,
and enqueue.

- Outlook (Microsoft Graph change notifications): validation handshake,
  clientState check, message id hint from the resource path, 202 Accepted.
- Gmail (Cloud Pub/Sub push): base64 JSON envelope, publishTime staleness
  guard, 200 on anything that should not be redelivered.
"""

import base64
import binascii
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from mailsync.config import settings
from mailsync.exceptions import ValidationError
from mailsync.services.email_models import Account, ProviderKind, WebhookSession
from mailsync.services.stores import AccountStore
from mailsync.services.sync_queue import SyncJob, SyncJobQueue
from mailsync.utils.datetime_utils import age_seconds, parse_iso, utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("webhook_ingestion")

# Graph change notifications do not always carry a timestamp
OUTLOOK_TIMESTAMP_FIELDS = ("sentDateTime", "receivedDateTime", "eventTime")


@dataclass
class WebhookResponse:
    status_code: int
    body: Any = None
    media_type: str = "application/json"
    enqueued_jobs: List[str] = field(default_factory=list)


def default_staleness_limits() -> Dict[ProviderKind, timedelta]:
    return {
        ProviderKind.WEBHOOK_PUSH: timedelta(seconds=settings.outlook_notification_max_age_seconds),
        ProviderKind.PUBSUB_PUSH: timedelta(seconds=settings.gmail_notification_max_age_seconds),
    }


def is_stale(timestamp: Optional[datetime], max_age: timedelta, now: Optional[datetime] = None) -> bool:
    """A notification without a timestamp is never considered stale."""
    if timestamp is None:
        return False
    return age_seconds(timestamp, now) > max_age.total_seconds()


def extract_message_id(resource: Optional[str]) -> Optional[str]:
    """
    Pull the message id out of a Graph resource path.

    ``Users/{userId}/Messages/{messageId}`` -> ``{messageId}``
    """
    if not resource:
        return None
    parts = [part for part in resource.split("/") if part]
    for index, part in enumerate(parts[:-1]):
        if part.lower() == "messages":
            return parts[index + 1]
    return None


class OutlookWebhookHandler:
    """Microsoft Graph change notifications."""

    provider_kind = ProviderKind.WEBHOOK_PUSH

    def __init__(self, account_store: AccountStore, queue: SyncJobQueue, max_age: timedelta):
        self.account_store = account_store
        self.queue = queue
        self.max_age = max_age

    async def handle(self, query: Dict[str, str], body: Optional[Dict[str, Any]],
                     now: Optional[datetime] = None) -> WebhookResponse:
        validation_token = query.get("validationToken")
        if validation_token is not None:
            logger.info("Outlook subscription validation request received")
            MetricsCollector.record_webhook(self.provider_kind.value, "validation")
            return WebhookResponse(200, validation_token, media_type="text/plain")

        notifications = (body or {}).get("value") or []
        if not isinstance(notifications, list):
            MetricsCollector.record_webhook(self.provider_kind.value, "malformed")
            return WebhookResponse(400, {"error": "Invalid notification payload"})
        if not notifications:
            logger.warning("Outlook webhook received an empty notification batch")
            return WebhookResponse(202, {"message": "Accepted"})

        now = now or utc_now()
        # account id -> (account, first message hint)
        targets: Dict[str, tuple] = {}
        for notification in notifications:
            account = await self._accept(notification, now)
            if account is None:
                continue
            hint = extract_message_id(notification.get("resource"))
            if account.id in targets:
                logger.debug(f"Coalescing notification for account {account.id}")
                MetricsCollector.record_webhook(self.provider_kind.value, "coalesced")
                continue
            targets[account.id] = (account, hint)

        job_ids = []
        for account, hint in targets.values():
            job_id = await self.queue.enqueue(SyncJob(account_id=account.id, message_hint=hint))
            job_ids.append(job_id)
            MetricsCollector.record_webhook(self.provider_kind.value, "enqueued")

        logger.info(f"Outlook webhook: {len(notifications)} notification(s), {len(job_ids)} job(s) enqueued")
        return WebhookResponse(202, {"message": "Accepted"}, enqueued_jobs=job_ids)

    async def _accept(self, notification: Dict[str, Any], now: datetime) -> Optional[Account]:
        """Return the account a notification belongs to, or None if it must be dropped."""
        provider = self.provider_kind.value
        if not isinstance(notification, dict):
            MetricsCollector.record_webhook(provider, "malformed")
            return None

        subscription_id = notification.get("subscriptionId")
        account = await self.account_store.get_by_subscription_ref(subscription_id) if subscription_id else None
        if account is None or not account.is_active:
            logger.warning(f"Dropping Outlook notification for unknown or inactive subscription {subscription_id}")
            MetricsCollector.record_webhook(provider, "unknown_account")
            return None

        session = account.session
        expected = session.webhook_secret if isinstance(session, WebhookSession) else ""
        received = notification.get("clientState") or ""
        if not expected or not hmac.compare_digest(received.encode(), expected.encode()):
            logger.error(f"Invalid clientState on notification for account {account.id}, dropping")
            MetricsCollector.record_webhook(provider, "rejected")
            return None

        timestamp = None
        for key in OUTLOOK_TIMESTAMP_FIELDS:
            timestamp = parse_iso(notification.get(key) or (notification.get("resourceData") or {}).get(key))
            if timestamp is not None:
                break
        if is_stale(timestamp, self.max_age, now):
            logger.warning(f"Ignoring stale Outlook notification for account {account.id} from {timestamp}")
            MetricsCollector.record_webhook(provider, "stale")
            return None

        return account


class GmailWebhookHandler:
    """Cloud Pub/Sub push deliveries for Gmail watches."""

    provider_kind = ProviderKind.PUBSUB_PUSH

    def __init__(self, account_store: AccountStore, queue: SyncJobQueue, max_age: timedelta):
        self.account_store = account_store
        self.queue = queue
        self.max_age = max_age

    @staticmethod
    def decode_envelope(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Decode ``message.data`` of a Pub/Sub push envelope.

        Raises:
            ValidationError: Envelope or payload is malformed
        """
        message = (body or {}).get("message") if isinstance(body, dict) else None
        if not isinstance(message, dict) or not message.get("data"):
            raise ValidationError("Invalid Pub/Sub message")
        try:
            payload = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise ValidationError(f"Undecodable Pub/Sub data: {e}")
        if not isinstance(payload, dict) or not payload.get("emailAddress"):
            raise ValidationError("Pub/Sub data has no emailAddress")
        return payload

    async def handle(self, body: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> WebhookResponse:
        provider = self.provider_kind.value
        try:
            payload = self.decode_envelope(body)
        except ValidationError as e:
            logger.warning(f"Rejecting Gmail push: {e.message}")
            MetricsCollector.record_webhook(provider, "malformed")
            return WebhookResponse(400, {"error": e.message})

        try:
            message = body["message"]
            publish_time = parse_iso(message.get("publishTime") or message.get("publish_time"))
            if is_stale(publish_time, self.max_age, now or utc_now()):
                logger.warning(f"Ignoring stale Gmail notification for {payload['emailAddress']} published {publish_time}")
                MetricsCollector.record_webhook(provider, "stale")
                return WebhookResponse(200, {"message": "Notification too old, ignored"})

            account = await self.account_store.get_by_address(self.provider_kind, payload["emailAddress"])
            if account is None or not account.is_active:
                logger.warning(f"Dropping Gmail notification for unknown or inactive address {payload['emailAddress']}")
                MetricsCollector.record_webhook(provider, "unknown_account")
                return WebhookResponse(200, {"message": "Account not found or inactive"})

            job_id = await self.queue.enqueue(SyncJob(account_id=account.id))
            MetricsCollector.record_webhook(provider, "enqueued")
            logger.info(f"Gmail history sync job {job_id} enqueued for account {account.id} (historyId={payload.get('historyId')})")
            return WebhookResponse(200, {"message": "Notification processed"}, enqueued_jobs=[job_id])
        except Exception as e:
            # Acknowledge anyway; Pub/Sub would otherwise redeliver forever
            logger.error(f"Error processing Gmail notification: {e}")
            MetricsCollector.record_webhook(provider, "error")
            return WebhookResponse(200, {"message": "Error processed"})


class WebhookIngestionService:
    """Routes inbound webhook requests to the handler for the provider kind."""

    def __init__(
        self,
        account_store: AccountStore,
        queue: SyncJobQueue,
        staleness_limits: Optional[Dict[ProviderKind, timedelta]] = None,
    ):
        limits = staleness_limits or default_staleness_limits()
        self.outlook = OutlookWebhookHandler(account_store, queue, limits[ProviderKind.WEBHOOK_PUSH])
        self.gmail = GmailWebhookHandler(account_store, queue, limits[ProviderKind.PUBSUB_PUSH])

    async def handle(
        self,
        provider_kind: str,
        query: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> WebhookResponse:
        try:
            kind = ProviderKind.parse(provider_kind)
        except ValidationError:
            return WebhookResponse(404, {"error": f"No webhook for provider '{provider_kind}'"})

        if kind is ProviderKind.WEBHOOK_PUSH:
            return await self.outlook.handle(query or {}, body, now)
        if kind is ProviderKind.PUBSUB_PUSH:
            return await self.gmail.handle(body, now)
        return WebhookResponse(404, {"error": "IMAP accounts have no webhook"})
