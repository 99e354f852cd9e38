"""Poll orchestrator: one ingestion pass over every eligible account.

Accounts are processed strictly one after another so the number of open
connections to third-party servers never exceeds one per poller.  A
failing account is recorded and skipped; it never aborts the batch.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog

from mailpoll_schema import FetchStatus, MailboxAccount, SecretKind

from .config import SessionConfig
from .db.registry import AccountRegistry
from .errors import (
    AccountSessionError,
    AccountUnavailableError,
    CredentialError,
    MessageParseError,
    PersistenceError,
)
from .imap_client import MailSession, SessionParams
from .pipeline import IngestionPipeline, IngestOutcome
from .vault import CredentialVault

logger = structlog.get_logger()

SessionFactory = Callable[[SessionParams], MailSession]


class PassState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class AccountFetchResult:
    account_id: uuid.UUID
    tenant_id: uuid.UUID
    status: FetchStatus | None = None
    fetched: int = 0
    ingested: int = 0
    duplicates: int = 0
    filtered: int = 0
    parse_failures: int = 0
    persist_failures: int = 0
    enqueue_failures: int = 0
    error: str | None = None
    skipped: bool = False


@dataclass
class PassResult:
    started_at: datetime
    finished_at: datetime | None = None
    accounts: list[AccountFetchResult] = field(default_factory=list)
    error: str | None = None

    @property
    def has_errors(self) -> bool:
        return self.error is not None or any(
            result.status is FetchStatus.ERROR for result in self.accounts
        )

    @property
    def ingested(self) -> int:
        return sum(result.ingested for result in self.accounts)


@dataclass
class VerifyResult:
    account_id: uuid.UUID
    ok: bool
    error: str | None = None


class PollOrchestrator:
    def __init__(
        self,
        registry: AccountRegistry,
        vault: CredentialVault,
        pipeline: IngestionPipeline,
        session_config: SessionConfig,
        session_factory: SessionFactory = MailSession,
    ) -> None:
        self._registry = registry
        self._vault = vault
        self._pipeline = pipeline
        self._session_config = session_config
        self._session_factory = session_factory

        self.state = PassState.IDLE
        self.last_result: PassResult | None = None
        self._in_flight: set[uuid.UUID] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_one_ingestion_pass(self) -> PassResult | None:
        """Poll every eligible account once.

        Returns None without doing anything if a pass is already running.
        """
        if self.state is PassState.RUNNING:
            logger.info("ingestion_pass_skipped", reason="pass_in_progress")
            return None
        self.state = PassState.RUNNING

        result = PassResult(started_at=datetime.now(UTC))
        try:
            logger.info("ingestion_pass_started")
            try:
                accounts = await self._registry.find_eligible_accounts()
            except PersistenceError as exc:
                result.error = str(exc)
                logger.error("eligible_accounts_lookup_failed", error=str(exc))
                accounts = []

            for account in accounts:
                result.accounts.append(await self._process_account(account))

            result.finished_at = datetime.now(UTC)
            logger.info(
                "ingestion_pass_finished",
                accounts=len(result.accounts),
                ingested=result.ingested,
                errors=sum(1 for r in result.accounts if r.status is FetchStatus.ERROR),
            )
            self.last_result = result
            return result
        finally:
            self.state = PassState.IDLE

    async def fetch_now(self, account_id: uuid.UUID) -> AccountFetchResult:
        """Run the single-account cycle on demand, regardless of auto-fetch."""
        account = await self._registry.get(account_id)
        if account is None:
            raise AccountUnavailableError(f"account {account_id} not found")
        if not account.is_active:
            raise AccountUnavailableError(f"account {account_id} is not active")
        if not account.protocol_config.host.strip():
            raise AccountUnavailableError(f"account {account_id} has no IMAP host")
        return await self._process_account(account)

    async def verify_account(self, account_id: uuid.UUID) -> VerifyResult:
        """Connect, login and select, then disconnect. Writes no state."""
        account = await self._registry.get(account_id)
        if account is None:
            raise AccountUnavailableError(f"account {account_id} not found")

        with structlog.contextvars.bound_contextvars(
            tenant_id=str(account.tenant_id),
            account_id=str(account.account_id),
        ):
            session = None
            try:
                session = self._session_factory(self._session_params(account))
                await session.connect()
            except (AccountSessionError, CredentialError) as exc:
                logger.warning("account_verify_failed", error=str(exc))
                return VerifyResult(account_id=account_id, ok=False, error=str(exc))
            finally:
                if session is not None:
                    await session.disconnect()

            logger.info("account_verified")
            return VerifyResult(account_id=account_id, ok=True)

    # ------------------------------------------------------------------
    # Single account
    # ------------------------------------------------------------------

    async def _process_account(self, account: MailboxAccount) -> AccountFetchResult:
        result = AccountFetchResult(account_id=account.account_id, tenant_id=account.tenant_id)

        if account.account_id in self._in_flight:
            logger.info("account_fetch_skipped", account_id=str(account.account_id))
            result.status = account.last_fetch_status
            result.skipped = True
            return result

        self._in_flight.add(account.account_id)
        try:
            with structlog.contextvars.bound_contextvars(
                tenant_id=str(account.tenant_id),
                account_id=str(account.account_id),
            ):
                try:
                    await self._fetch_account(account, result)
                except (AccountSessionError, CredentialError) as exc:
                    result.status = FetchStatus.ERROR
                    result.error = str(exc)
                    logger.warning(
                        "account_fetch_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                except Exception as exc:
                    result.status = FetchStatus.ERROR
                    result.error = str(exc) or type(exc).__name__
                    logger.exception("account_fetch_unexpected_error")
                else:
                    result.status = FetchStatus.SUCCESS
                    logger.info(
                        "account_fetch_succeeded",
                        fetched=result.fetched,
                        ingested=result.ingested,
                    )

                await self._record(result)
        finally:
            self._in_flight.discard(account.account_id)
        return result

    async def _fetch_account(self, account: MailboxAccount, result: AccountFetchResult) -> None:
        params = self._session_params(account)

        async with self._session_factory(params) as session:
            uids = await session.search_unseen()
            logger.debug("unseen_messages_found", count=len(uids))

            for uid in uids:
                fetched = await session.fetch(uid)
                result.fetched += 1

                try:
                    ingest = await self._pipeline.ingest(fetched.raw_bytes, account)
                except MessageParseError as exc:
                    result.parse_failures += 1
                    logger.warning("message_parse_failed", uid=uid, error=str(exc))
                    continue
                except PersistenceError as exc:
                    result.persist_failures += 1
                    logger.error("message_persist_failed", uid=uid, error=str(exc))
                    continue

                if ingest.outcome is IngestOutcome.INGESTED:
                    result.ingested += 1
                    if ingest.enqueue_failed:
                        result.enqueue_failures += 1
                elif ingest.outcome is IngestOutcome.DUPLICATE:
                    result.duplicates += 1
                else:
                    result.filtered += 1

                await session.mark_seen(uid)

    def _session_params(self, account: MailboxAccount) -> SessionParams:
        protocol = account.protocol_config
        return SessionParams.from_config(
            host=protocol.host,
            port=protocol.port,
            use_tls=protocol.use_tls,
            username=protocol.username,
            password=self._vault.read_secret(account, SecretKind.PROTOCOL),
            config=self._session_config,
        )

    async def _record(self, result: AccountFetchResult) -> None:
        try:
            await self._registry.update_fetch_state(
                result.account_id,
                status=result.status,
                timestamp=datetime.now(UTC),
                error=result.error,
            )
        except Exception:
            logger.exception("fetch_state_write_failed")
