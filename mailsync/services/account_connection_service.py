"""
Account Connection Service

Connect, reconnect, list and disconnect use cases. Connecting validates the
input, stores the encrypted credential, creates the provider subscription and
kicks off the first sync.
"""

from typing import Any, Dict, List, Optional

from mailsync.exceptions import (
    AccountNotFoundError,
    DuplicateAccountError,
    EmailSyncError,
    PermissionDeniedError,
    ValidationError,
)
from mailsync.services.connection_managers import ConnectionManagerRegistry
from mailsync.services.credential_cipher import CredentialCipher
from mailsync.services.email_connectors.imap_connector import ImapSettings
from mailsync.services.email_models import Account, ConnectionState, EmailAddress, ProviderKind
from mailsync.services.imap_idle_monitor import ImapIdleMonitor
from mailsync.services.stores import AccountStore
from mailsync.services.sync_queue import SyncJob, SyncJobQueue
from mailsync.utils.logging import get_logger

logger = get_logger("account_connection")

OAUTH_KINDS = (ProviderKind.WEBHOOK_PUSH, ProviderKind.PUBSUB_PUSH)


def validate_credentials(provider_kind: ProviderKind, credentials: Dict[str, Any]) -> None:
    """Shape check done before any network call."""
    if not isinstance(credentials, dict) or not credentials:
        raise ValidationError("Credentials are required")
    if provider_kind in OAUTH_KINDS:
        if not credentials.get("access_token") and not credentials.get("refresh_token"):
            raise ValidationError("OAuth credentials need an access_token or a refresh_token")
    else:
        ImapSettings(credentials)


class AccountConnectionService:
    """Connects, disconnects and inspects email accounts."""

    def __init__(
        self,
        account_store: AccountStore,
        managers: ConnectionManagerRegistry,
        queue: SyncJobQueue,
        cipher: Optional[CredentialCipher] = None,
        idle_monitor: Optional[ImapIdleMonitor] = None,
    ):
        self.account_store = account_store
        self.managers = managers
        self.queue = queue
        self.cipher = cipher or CredentialCipher()
        self.idle_monitor = idle_monitor

    async def connect(
        self,
        user_id: str,
        provider_kind,
        email_address: str,
        credentials: Dict[str, Any],
    ) -> Account:
        """
        Connect a mailbox for ``user_id``. Connecting an address the user
        disconnected earlier reactivates that account, keeping its id and its
        message history.

        Raises:
            ValidationError: Bad input (nothing is stored), or a reconnect
                with a different provider than the stored account
            DuplicateAccountError: The user already has this address connected
            AuthenticationError / ExternalServiceError: Provider setup failed;
                a new account is removed, a reconnected one stays disconnected
        """
        if not user_id:
            raise ValidationError("user_id is required")
        kind = ProviderKind.parse(provider_kind)
        address = EmailAddress.create(email_address).address
        validate_credentials(kind, credentials)

        existing = await self.account_store.find_by_user_and_address(user_id, address)
        if existing is not None:
            if existing.connection_state is not ConnectionState.DISCONNECTED:
                raise DuplicateAccountError(f"{address} is already connected for this user")
            if existing.provider_kind is not kind:
                raise ValidationError(
                    f"{address} was connected as {existing.provider_kind.value}; reconnect it with the same provider"
                )
            return await self._reconnect(existing, credentials)

        account = Account.create(user_id, kind, address, self.cipher.encrypt(credentials))
        await self.account_store.save(account)

        manager = self.managers.get(kind)
        account.begin_connecting()
        await self.account_store.save(account)
        try:
            await manager.setup(account)
        except Exception as e:
            logger.error(f"Setup failed for {address} ({kind.value}): {e}")
            await self.account_store.delete(account.id)
            raise

        await self._activate(account)
        logger.info(f"Connected {address} ({kind.value}) as account {account.id}")
        return account

    async def _reconnect(self, account: Account, credentials: Dict[str, Any]) -> Account:
        previous_credentials = account.encrypted_credentials
        account.encrypted_credentials = self.cipher.encrypt(credentials)
        account.session = None
        account.begin_connecting()
        await self.account_store.save(account)
        try:
            await self.managers.get(account.provider_kind).setup(account)
        except Exception as e:
            logger.error(f"Setup failed reconnecting account {account.id} ({account.email_address}): {e}")
            account.encrypted_credentials = previous_credentials
            account.session = None
            account.deactivate()
            await self.account_store.save(account)
            raise

        await self._activate(account)
        logger.info(f"Reconnected {account.email_address} ({account.provider_kind.value}) as account {account.id}")
        return account

    async def _activate(self, account: Account) -> None:
        account.activate()
        await self.account_store.save(account)

        await self.queue.enqueue(SyncJob(account_id=account.id, full_sync=True))
        if account.provider_kind is ProviderKind.POLL and self.idle_monitor is not None:
            await self.idle_monitor.start(account)

    async def list_accounts(self, user_id: str) -> List[Account]:
        """Every account the user connected, oldest first, in any state."""
        if not user_id:
            raise ValidationError("user_id is required")
        return await self.account_store.list_for_user(user_id)

    async def disconnect(self, account_id: str, user_id: str) -> Account:
        """
        Disconnect an account. The row is kept, inactive, so history survives
        a later reconnect.

        Raises:
            AccountNotFoundError: Unknown account
            PermissionDeniedError: Account belongs to another user
        """
        account = await self._owned_account(account_id, user_id)

        account.deactivate()
        await self.account_store.save(account)

        manager = self.managers.get(account.provider_kind)
        try:
            await manager.teardown(account)
        except EmailSyncError as e:
            logger.warning(f"Teardown for account {account.id} failed, subscription left to expire: {e.message}")
            account.session = None
        except Exception as e:
            logger.error(f"Unexpected teardown failure for account {account.id}: {e}")
            account.session = None

        if account.provider_kind is ProviderKind.POLL and self.idle_monitor is not None:
            await self.idle_monitor.stop(account.id)

        await self.account_store.save(account)
        logger.info(f"Disconnected account {account.id} ({account.email_address})")
        return account

    async def request_sync(self, account_id: str, user_id: Optional[str] = None, full_sync: bool = False) -> str:
        """Enqueue a manual sync and return the job id."""
        account = await self._owned_account(account_id, user_id)
        if not account.is_active:
            raise ValidationError(f"Account {account_id} is not connected")
        return await self.queue.enqueue(SyncJob(account_id=account.id, full_sync=full_sync))

    async def check_health(self, account_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        account = await self._owned_account(account_id, user_id)
        healthy = False
        if account.is_active:
            healthy = await self.managers.get(account.provider_kind).is_healthy(account)
        expires_at = account.subscription_expires_at()
        return {
            "account_id": account.id,
            "provider": account.provider_kind.value,
            "state": account.connection_state.value,
            "healthy": healthy,
            "subscription_expires_at": expires_at.isoformat() if expires_at else None,
            "last_synced_at": account.last_synced_at.isoformat() if account.last_synced_at else None,
        }

    async def _owned_account(self, account_id: str, user_id: Optional[str]) -> Account:
        account = await self.account_store.get(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        if user_id is not None and not account.belongs_to(user_id):
            raise PermissionDeniedError(f"Account {account_id} belongs to another user")
        return account
