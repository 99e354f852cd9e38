"""Mailbox account registry.

Accounts are created by an administrative surface; the poller only reads
them and writes the ``last_fetch_*`` fields.  Credentials cross this
boundary encrypted, through the vault's accessor pair.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailpoll_schema import (
    FetchStatus,
    MailboxAccount,
    OutboundConfig,
    ProtocolConfig,
    SecretKind,
)

from ..errors import PersistenceError
from ..vault import CredentialVault
from .models import MailboxAccountRow, as_utc

logger = structlog.get_logger()


class AccountRegistry:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
    ) -> None:
        self._sessions = sessions
        self._vault = vault

    async def register(
        self,
        account: MailboxAccount,
        *,
        secret: str,
        outbound_secret: str | None = None,
    ) -> MailboxAccount:
        """Store a new account, encrypting the plaintext secrets on the way in."""
        account = self._vault.write_secret(account, SecretKind.PROTOCOL, secret)
        if outbound_secret is not None:
            account = self._vault.write_secret(account, SecretKind.OUTBOUND, outbound_secret)

        try:
            async with self._sessions() as session, session.begin():
                session.add(_to_row(account))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not register account: {exc}") from exc

        logger.info(
            "account_registered",
            account_id=str(account.account_id),
            tenant_id=str(account.tenant_id),
        )
        return account

    async def get(self, account_id: uuid.UUID) -> MailboxAccount | None:
        try:
            async with self._sessions() as session:
                row = await session.get(MailboxAccountRow, account_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"account lookup failed: {exc}") from exc
        return _to_model(row) if row is not None else None

    async def find_eligible_accounts(self) -> list[MailboxAccount]:
        """Active, auto-fetch enabled accounts with a non-blank IMAP host."""
        stmt = (
            select(MailboxAccountRow)
            .where(
                MailboxAccountRow.is_active.is_(True),
                MailboxAccountRow.auto_fetch_enabled.is_(True),
                func.trim(MailboxAccountRow.protocol_host) != "",
            )
            .order_by(MailboxAccountRow.tenant_id, MailboxAccountRow.email_address)
        )
        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"eligible account lookup failed: {exc}") from exc
        return [_to_model(row) for row in rows]

    async def update_fetch_state(
        self,
        account_id: uuid.UUID,
        *,
        status: FetchStatus,
        timestamp: datetime,
        error: str | None = None,
    ) -> None:
        """Write the fetch-state fields, and only those."""
        stmt = (
            update(MailboxAccountRow)
            .where(MailboxAccountRow.account_id == account_id)
            .values(
                last_fetch_status=status.value,
                last_fetch_at=timestamp,
                last_fetch_error=error,
            )
        )
        try:
            async with self._sessions() as session, session.begin():
                result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not update fetch state: {exc}") from exc

        if result.rowcount == 0:
            logger.warning("fetch_state_account_missing", account_id=str(account_id))


def _to_row(account: MailboxAccount) -> MailboxAccountRow:
    protocol = account.protocol_config
    outbound = account.outbound_config
    return MailboxAccountRow(
        account_id=account.account_id,
        tenant_id=account.tenant_id,
        email_address=account.email_address,
        protocol_host=protocol.host,
        protocol_port=protocol.port,
        protocol_use_tls=protocol.use_tls,
        protocol_username=protocol.username,
        protocol_secret=protocol.encrypted_secret,
        outbound_host=outbound.host if outbound else None,
        outbound_port=outbound.port if outbound else None,
        outbound_use_tls=outbound.use_tls if outbound else None,
        outbound_username=outbound.username if outbound else None,
        outbound_secret=outbound.encrypted_secret if outbound else None,
        is_active=account.is_active,
        auto_fetch_enabled=account.auto_fetch_enabled,
        fetch_interval_ms=account.fetch_interval_ms,
        last_fetch_at=account.last_fetch_at,
        last_fetch_status=account.last_fetch_status.value,
        last_fetch_error=account.last_fetch_error,
    )


def _to_model(row: MailboxAccountRow) -> MailboxAccount:
    outbound = None
    if row.outbound_username is not None:
        outbound = OutboundConfig(
            host=row.outbound_host or "",
            port=row.outbound_port or 587,
            use_tls=bool(row.outbound_use_tls),
            username=row.outbound_username,
            encrypted_secret=row.outbound_secret or "",
        )
    return MailboxAccount(
        account_id=row.account_id,
        tenant_id=row.tenant_id,
        email_address=row.email_address,
        protocol_config=ProtocolConfig(
            host=row.protocol_host,
            port=row.protocol_port,
            use_tls=row.protocol_use_tls,
            username=row.protocol_username,
            encrypted_secret=row.protocol_secret,
        ),
        outbound_config=outbound,
        is_active=row.is_active,
        auto_fetch_enabled=row.auto_fetch_enabled,
        fetch_interval_ms=row.fetch_interval_ms,
        last_fetch_at=as_utc(row.last_fetch_at),
        last_fetch_status=FetchStatus(row.last_fetch_status),
        last_fetch_error=row.last_fetch_error,
    )
