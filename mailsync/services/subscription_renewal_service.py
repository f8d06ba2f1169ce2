"""
Subscription Renewal Service

Periodically extends push subscriptions before they lapse. Each account is
renewed independently; one failure never stops the sweep.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from mailsync.config import settings
from mailsync.services.connection_managers import ConnectionManagerRegistry
from mailsync.services.email_models import Account, ProviderKind
from mailsync.services.stores import AccountStore
from mailsync.utils.datetime_utils import expires_within, utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("subscription_renewal")

PUSH_KINDS = (ProviderKind.WEBHOOK_PUSH, ProviderKind.PUBSUB_PUSH)


def default_thresholds() -> Dict[ProviderKind, timedelta]:
    return {
        ProviderKind.WEBHOOK_PUSH: timedelta(hours=settings.outlook_renewal_threshold_hours),
        ProviderKind.PUBSUB_PUSH: timedelta(hours=settings.gmail_renewal_threshold_hours),
    }


@dataclass
class RenewalSummary:
    checked: int = 0
    renewed: int = 0
    failed: int = 0
    skipped: int = 0
    failed_accounts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {
            "checked": self.checked,
            "renewed": self.renewed,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class SubscriptionRenewalService:
    """Renews push subscriptions expiring within their provider's threshold."""

    def __init__(
        self,
        account_store: AccountStore,
        managers: ConnectionManagerRegistry,
        thresholds: Optional[Dict[ProviderKind, timedelta]] = None,
    ):
        self.account_store = account_store
        self.managers = managers
        self.thresholds = thresholds or default_thresholds()

    async def sweep(self, now: Optional[datetime] = None) -> RenewalSummary:
        now = now or utc_now()
        summary = RenewalSummary()

        for kind in PUSH_KINDS:
            threshold = self.thresholds[kind]
            for account in await self.account_store.list_active(kind):
                summary.checked += 1
                if not expires_within(account.subscription_expires_at(), threshold, now):
                    summary.skipped += 1
                    continue
                if await self.renew_account(account):
                    summary.renewed += 1
                else:
                    summary.failed += 1
                    summary.failed_accounts.append(account.id)

        logger.info(
            f"Renewal sweep finished: checked={summary.checked} renewed={summary.renewed} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    async def renew_account(self, account: Account) -> bool:
        """
        Renew one account, falling back to a fresh setup.

        Returns:
            bool: True if the account ends up ACTIVE with a live subscription.
        """
        manager = self.managers.get(account.provider_kind)
        provider = account.provider_kind.value

        account.begin_renewing()
        await self.account_store.save(account)

        try:
            await manager.renew(account)
        except Exception as renew_error:
            logger.warning(f"Renewal failed for account {account.id} ({provider}): {renew_error}; trying setup")
            try:
                await manager.setup(account)
            except Exception as setup_error:
                logger.error(f"Setup after failed renewal also failed for account {account.id}: {setup_error}")
                account.deactivate()
                await self.account_store.save(account)
                MetricsCollector.record_renewal(provider, "failed")
                return False

        account.activate()
        await self.account_store.save(account)
        MetricsCollector.record_renewal(provider, "renewed")
        logger.info(f"Subscription for account {account.id} ({provider}) valid until {account.subscription_expires_at()}")
        return True
