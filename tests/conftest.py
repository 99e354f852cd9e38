"""Shared test fixtures for the mailpoll test suite."""

from __future__ import annotations

import uuid
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from mailpoll.config import (
    DatabaseConfig,
    DedupConfig,
    NoiseConfig,
    PollerConfig,
    QueueConfig,
    RetryConfig,
    SessionConfig,
    VaultConfig,
)
from mailpoll.db.engine import Database
from mailpoll.db.registry import AccountRegistry
from mailpoll.db.store import EnqueueLedger, MessageStore, ThreadStore
from mailpoll.dedup import DuplicateDetector
from mailpoll.enqueuer import Enqueuer, WorkQueue
from mailpoll.noise import NoiseFilter
from mailpoll.parser import MessageNormalizer
from mailpoll.pipeline import IngestionPipeline
from mailpoll.threads import ThreadLinker
from mailpoll.vault import CredentialVault
from mailpoll_schema import MailboxAccount, Priority, ProtocolConfig, SecretKind

TENANT_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
OTHER_TENANT_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest.fixture
def vault_config() -> VaultConfig:
    return VaultConfig(secret_key="test-vault-key")


@pytest.fixture
def vault(vault_config: VaultConfig) -> CredentialVault:
    return CredentialVault(vault_config)


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        mailbox="INBOX",
        connect_timeout_seconds=1.0,
        auth_timeout_seconds=1.0,
        command_timeout_seconds=1.0,
    )


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        initial_wait_seconds=0.01,
        max_wait_seconds=0.1,
        multiplier=2.0,
    )


@pytest.fixture
def dedup_config() -> DedupConfig:
    return DedupConfig(tolerance_seconds=5)


@pytest.fixture
def noise_config() -> NoiseConfig:
    return NoiseConfig()


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(bootstrap_servers="localhost:9092", topic="mail-processing")


@pytest.fixture
def poller_config(
    vault_config: VaultConfig,
    session_config: SessionConfig,
    retry_config: RetryConfig,
    queue_config: QueueConfig,
) -> PollerConfig:
    return PollerConfig(
        name="mailpoll-test",
        health_port=18080,
        pass_interval_seconds=0.05,
        database=DatabaseConfig(url="sqlite+aiosqlite://"),
        vault=vault_config,
        session=session_config,
        queue=queue_config,
        retry=retry_config,
    )


# ------------------------------------------------------------------
# Database
# ------------------------------------------------------------------


@pytest.fixture
async def database():
    db = Database(DatabaseConfig(url="sqlite+aiosqlite://"))
    await db.init_models()
    yield db
    await db.close()


@pytest.fixture
def message_store(database: Database) -> MessageStore:
    return MessageStore(database.session)


@pytest.fixture
def thread_store(database: Database) -> ThreadStore:
    return ThreadStore(database.session)


@pytest.fixture
def ledger(database: Database) -> EnqueueLedger:
    return EnqueueLedger(database.session)


@pytest.fixture
def registry(database: Database, vault: CredentialVault) -> AccountRegistry:
    return AccountRegistry(database.session, vault)


# ------------------------------------------------------------------
# Accounts
# ------------------------------------------------------------------


def _make_account(**overrides) -> MailboxAccount:
    defaults = dict(
        tenant_id=TENANT_ID,
        email_address="support@acme.test",
        protocol_config=ProtocolConfig(
            host="imap.acme.test",
            port=993,
            use_tls=True,
            username="support@acme.test",
        ),
    )
    defaults.update(overrides)
    return MailboxAccount(**defaults)


@pytest.fixture
def account(vault: CredentialVault) -> MailboxAccount:
    return vault.write_secret(_make_account(), SecretKind.PROTOCOL, "imap-password")


# ------------------------------------------------------------------
# Work queue and pipeline
# ------------------------------------------------------------------


class RecordingQueue(WorkQueue):
    """In-memory work queue that records jobs and can fail on demand."""

    def __init__(self, *, failures: int = 0) -> None:
        self.jobs: list[dict] = []
        self.calls = 0
        self._failures = failures

    async def enqueue(
        self,
        message_id: uuid.UUID,
        tenant_id: uuid.UUID,
        priority: Priority,
        dedupe_key: str,
    ) -> None:
        self.calls += 1
        if self._failures > 0:
            self._failures -= 1
            raise ConnectionError("broker unavailable")
        self.jobs.append(
            {
                "message_id": message_id,
                "tenant_id": tenant_id,
                "priority": priority,
                "dedupe_key": dedupe_key,
            },
        )


@pytest.fixture
def work_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def linker(message_store: MessageStore, thread_store: ThreadStore) -> ThreadLinker:
    return ThreadLinker(message_store, thread_store)


@pytest.fixture
def pipeline(
    message_store: MessageStore,
    ledger: EnqueueLedger,
    linker: ThreadLinker,
    work_queue: RecordingQueue,
    retry_config: RetryConfig,
    dedup_config: DedupConfig,
    noise_config: NoiseConfig,
) -> IngestionPipeline:
    return IngestionPipeline(
        normalizer=MessageNormalizer(),
        noise=NoiseFilter(noise_config),
        dedup=DuplicateDetector(message_store, dedup_config),
        store=message_store,
        linker=linker,
        enqueuer=Enqueuer(ledger, work_queue, retry_config),
    )


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str | None = "Test Subject",
    from_addr: str | None = "customer@example.com",
    to_addr: str = "support@acme.test",
    body: str = "Hello, World!",
    message_id: str | None = "<test-001@example.com>",
    date: str | None = "Sun, 01 Jun 2025 12:00:00 +0000",
    cc: str | None = None,
    in_reply_to: str | None = None,
    references: str | None = None,
    extra_headers: dict[str, str] | None = None,
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    if subject is not None:
        msg["Subject"] = subject
    if from_addr is not None:
        msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id is not None:
        msg["Message-ID"] = message_id
    if date is not None:
        msg["Date"] = date
    if cc:
        msg["Cc"] = cc
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    for name, value in (extra_headers or {}).items():
        msg[name] = value
    return msg.as_bytes()


def _build_multipart_email(
    *,
    body_text: str = "Plain body",
    body_html: str = "<p>HTML body</p>",
    with_attachment: bool = False,
) -> bytes:
    """Build a multipart/mixed email with a text/HTML alternative."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Multipart Email"
    msg["From"] = "Jane Customer <jane@example.com>"
    msg["To"] = "support@acme.test"
    msg["Message-ID"] = "<multi-001@example.com>"
    msg["Date"] = "Sun, 01 Jun 2025 12:00:00 +0000"

    alt = MIMEMultipart("alternative")
    alt.attach(MIMEText(body_text, "plain"))
    alt.attach(MIMEText(body_html, "html"))
    msg.attach(alt)

    if with_attachment:
        attached = MIMEText("attached notes", "plain")
        attached.add_header("Content-Disposition", "attachment", filename="notes.txt")
        msg.attach(attached)

    return msg.as_bytes()


@pytest.fixture
def plain_eml_bytes() -> bytes:
    return _build_plain_email()


@pytest.fixture
def multipart_eml_bytes() -> bytes:
    return _build_multipart_email(with_attachment=True)
