"""
PostgreSQL-backed account and message stores.
"""

import uuid
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import BigInteger, Text, and_, cast, func, literal, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert

from mailsync.db.database import get_session_context
from mailsync.db.models.email import EmailAccount, EmailMessage
from mailsync.services.email_models import (
    Account,
    ConnectionState,
    Cursor,
    MessageRecord,
    ProviderKind,
    PubSubSession,
    session_from_dict,
    session_to_dict,
)
from mailsync.services.stores import AccountStore, MessageStore
from mailsync.utils.logging import get_logger

logger = get_logger("sql_stores")

ACTIVE_STATES = (ConnectionState.ACTIVE.value, ConnectionState.RENEWING.value)


def _account_from_row(row: EmailAccount) -> Account:
    kind = ProviderKind(row.provider_kind)
    return Account(
        id=str(row.id),
        user_id=row.user_id,
        provider_kind=kind,
        email_address=row.email_address,
        encrypted_credentials=row.encrypted_credentials,
        connection_state=ConnectionState(row.connection_state),
        last_synced_at=row.last_synced_at,
        session=session_from_dict(kind, row.session_state),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _copy_onto_row(account: Account, row: EmailAccount) -> None:
    row.user_id = account.user_id
    row.provider_kind = account.provider_kind.value
    row.email_address = account.email_address
    row.connection_state = account.connection_state.value
    row.encrypted_credentials = account.encrypted_credentials
    row.session_state = session_to_dict(account.session)
    row.subscription_ref = account.subscription_ref
    row.history_cursor = account.session.history_cursor if isinstance(account.session, PubSubSession) else None
    row.last_synced_at = account.last_synced_at
    row.updated_at = account.updated_at


class SqlAccountStore(AccountStore):
    """Account store over the ``email_accounts`` table."""

    def __init__(self, session_context: Callable = get_session_context):
        self._session_context = session_context

    async def get(self, account_id: str) -> Optional[Account]:
        try:
            key = uuid.UUID(str(account_id))
        except ValueError:
            return None
        async with self._session_context() as session:
            row = await session.get(EmailAccount, key)
            return _account_from_row(row) if row else None

    async def _first(self, *criteria) -> Optional[Account]:
        async with self._session_context() as session:
            result = await session.execute(select(EmailAccount).where(*criteria).limit(1))
            row = result.scalar_one_or_none()
            return _account_from_row(row) if row else None

    async def get_by_subscription_ref(self, subscription_ref: str) -> Optional[Account]:
        return await self._first(EmailAccount.subscription_ref == subscription_ref)

    async def get_by_address(self, provider_kind: ProviderKind, email_address: str) -> Optional[Account]:
        # An address may be connected by several users; prefer an active row
        async with self._session_context() as session:
            result = await session.execute(
                select(EmailAccount)
                .where(
                    EmailAccount.provider_kind == provider_kind.value,
                    func.lower(EmailAccount.email_address) == email_address.strip().lower(),
                )
                .order_by(EmailAccount.connection_state.in_(ACTIVE_STATES).desc(), EmailAccount.updated_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _account_from_row(row) if row else None

    async def find_by_user_and_address(self, user_id: str, email_address: str) -> Optional[Account]:
        return await self._first(
            EmailAccount.user_id == user_id,
            func.lower(EmailAccount.email_address) == email_address.strip().lower(),
        )

    async def list_active(self, provider_kind: Optional[ProviderKind] = None) -> List[Account]:
        query = select(EmailAccount).where(EmailAccount.connection_state.in_(ACTIVE_STATES))
        if provider_kind is not None:
            query = query.where(EmailAccount.provider_kind == provider_kind.value)
        async with self._session_context() as session:
            result = await session.execute(query)
            return [_account_from_row(row) for row in result.scalars().all()]

    async def list_for_user(self, user_id: str) -> List[Account]:
        async with self._session_context() as session:
            result = await session.execute(
                select(EmailAccount).where(EmailAccount.user_id == user_id).order_by(EmailAccount.created_at)
            )
            return [_account_from_row(row) for row in result.scalars().all()]

    async def save(self, account: Account) -> None:
        async with self._session_context() as session:
            row = await session.get(EmailAccount, uuid.UUID(account.id))
            if row is None:
                row = EmailAccount(id=uuid.UUID(account.id), created_at=account.created_at)
                session.add(row)
            elif account.is_active:
                # A sync may have advanced the position since this copy was loaded
                stored = row.history_cursor if account.provider_kind is ProviderKind.PUBSUB_PUSH else row.last_synced_at
                account.apply_cursor(stored, row.last_synced_at)
            _copy_onto_row(account, row)
            await session.commit()

    async def delete(self, account_id: str) -> None:
        async with self._session_context() as session:
            row = await session.get(EmailAccount, uuid.UUID(str(account_id)))
            if row is not None:
                await session.delete(row)
                await session.commit()

    async def advance_cursor(self, account_id: str, cursor: Optional[Cursor], synced_at: datetime) -> bool:
        """Conditional UPDATE so that a slower, older sync can never move the cursor back."""
        key = uuid.UUID(str(account_id))
        async with self._session_context() as session:
            advanced = False
            if isinstance(cursor, datetime) or cursor is None:
                target = cursor or synced_at
                result = await session.execute(
                    update(EmailAccount)
                    .where(
                        EmailAccount.id == key,
                        or_(EmailAccount.last_synced_at.is_(None), EmailAccount.last_synced_at < target),
                    )
                    .values(last_synced_at=target, updated_at=func.now())
                )
                advanced = result.rowcount > 0
            else:
                history_id = str(cursor)
                result = await session.execute(
                    update(EmailAccount)
                    .where(
                        EmailAccount.id == key,
                        or_(
                            EmailAccount.history_cursor.is_(None),
                            cast(EmailAccount.history_cursor, BigInteger) < int(history_id),
                        ),
                    )
                    .values(
                        history_cursor=history_id,
                        session_state=func.jsonb_set(
                            func.coalesce(EmailAccount.session_state, cast("{}", JSONB)),
                            literal_column("'{history_cursor}'"),
                            func.to_jsonb(cast(literal(history_id), Text)),
                        ),
                        updated_at=func.now(),
                    )
                )
                advanced = result.rowcount > 0
                await session.execute(
                    update(EmailAccount)
                    .where(
                        EmailAccount.id == key,
                        or_(EmailAccount.last_synced_at.is_(None), EmailAccount.last_synced_at < synced_at),
                    )
                    .values(last_synced_at=synced_at)
                )
            await session.commit()
            return advanced

    async def update_credentials(self, account_id: str, encrypted_credentials: str) -> None:
        async with self._session_context() as session:
            await session.execute(
                update(EmailAccount)
                .where(EmailAccount.id == uuid.UUID(str(account_id)))
                .values(encrypted_credentials=encrypted_credentials, updated_at=func.now())
            )
            await session.commit()


class SqlMessageStore(MessageStore):
    """Message store over the ``email_messages`` table."""

    def __init__(self, session_context: Callable = get_session_context):
        self._session_context = session_context

    async def insert_batch(self, records: List[MessageRecord]) -> List[MessageRecord]:
        unique = {}
        for record in records:
            unique.setdefault(record.idempotency_key, record)
        if not unique:
            return []

        rows = [
            {
                "id": uuid.UUID(record.id),
                "account_id": uuid.UUID(record.account_id),
                "provider_message_id": record.provider_message_id,
                "sender_email": record.sender.address,
                "sender_name": record.sender.name,
                "to_recipients": [recipient.to_dict() for recipient in record.recipients],
                "subject": record.subject,
                "preview": record.preview,
                "has_attachments": record.has_attachments,
                "labels": list(record.labels),
                "received_at": record.timestamp,
            }
            for record in unique.values()
        ]
        statement = (
            pg_insert(EmailMessage)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["account_id", "provider_message_id"])
            .returning(EmailMessage.account_id, EmailMessage.provider_message_id)
        )
        async with self._session_context() as session:
            result = await session.execute(statement)
            inserted_keys = {(str(account_id), message_id) for account_id, message_id in result.all()}
            await session.commit()

        inserted = [record for key, record in unique.items() if key in inserted_keys]
        logger.debug(f"Inserted {len(inserted)} of {len(records)} message records")
        return inserted

    async def exists(self, account_id: str, provider_message_id: str) -> bool:
        async with self._session_context() as session:
            result = await session.execute(
                select(EmailMessage.id).where(
                    EmailMessage.account_id == uuid.UUID(str(account_id)),
                    EmailMessage.provider_message_id == provider_message_id,
                ).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def count_since(self, account_id: str, since: datetime) -> int:
        async with self._session_context() as session:
            result = await session.execute(
                select(func.count(EmailMessage.id)).where(
                    and_(
                        EmailMessage.account_id == uuid.UUID(str(account_id)),
                        EmailMessage.received_at >= since,
                    )
                )
            )
            return int(result.scalar_one())
