"""Canonical data model shared between the poller and downstream consumers."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class FetchStatus(str, Enum):
    """Outcome of the most recent fetch for a mailbox account."""

    NEVER = "never"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class SourceChannel(str, Enum):
    """How a message entered the system."""

    POLL = "poll"
    WEBHOOK = "webhook"


class Classification(str, Enum):
    """Noise filter verdict for an inbound message."""

    GENUINE = "genuine"
    SELF_ORIGINATED = "self_originated"
    AUTOMATED = "automated"


class Priority(str, Enum):
    """Downstream processing priority."""

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class SecretKind(str, Enum):
    """Which credential of an account to read or write."""

    PROTOCOL = "protocol"
    OUTBOUND = "outbound"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ProtocolConfig(BaseModel):
    """Inbound (IMAP) connection parameters. The secret is always ciphertext."""

    host: str = Field(default="", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_tls: bool = Field(default=True, description="Connect with implicit TLS")
    username: str = Field(description="IMAP login username")
    encrypted_secret: str = Field(default="", description="Vault ciphertext (ivHex:cipherHex)")


class OutboundConfig(BaseModel):
    """Outbound (SMTP) parameters. Carried for credential access only."""

    host: str = Field(default="", description="SMTP server hostname")
    port: int = Field(default=587, description="SMTP server port")
    use_tls: bool = Field(default=False, description="Connect with implicit TLS")
    username: str = Field(description="SMTP login username")
    encrypted_secret: str = Field(default="", description="Vault ciphertext (ivHex:cipherHex)")


class MailboxAccount(BaseModel):
    """A tenant's external mailbox and the state of its polling."""

    account_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    tenant_id: uuid.UUID
    email_address: str
    protocol_config: ProtocolConfig
    outbound_config: OutboundConfig | None = None
    is_active: bool = True
    auto_fetch_enabled: bool = True
    fetch_interval_ms: int = Field(default=120_000, gt=0)
    last_fetch_at: datetime | None = None
    last_fetch_status: FetchStatus = FetchStatus.NEVER
    last_fetch_error: str | None = None

    @property
    def is_eligible(self) -> bool:
        """Whether the scheduled pass should poll this account."""
        return (
            self.is_active
            and self.auto_fetch_enabled
            and bool(self.protocol_config.host.strip())
        )


class Address(BaseModel):
    """A single mailbox address with its display name."""

    email: str
    name: str = ""


class Message(BaseModel):
    """A normalized inbound message.

    ``message_id`` is the protocol ``Message-ID`` header, ``id`` is the
    row identifier assigned by this system.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    message_id: str | None = None
    tenant_id: uuid.UUID
    account_id: uuid.UUID | None = None
    sender: Address
    to: list[Address] = Field(default_factory=list)
    cc: list[Address] = Field(default_factory=list)
    subject: str = ""
    body_text: str = ""
    body_html: str = ""
    received_at: datetime
    in_reply_to: str | None = None
    references: list[str] = Field(default_factory=list)
    source_channel: SourceChannel = SourceChannel.POLL
    dedupe_key: str = ""
    thread_id: uuid.UUID | None = None

    @field_validator("received_at")
    @classmethod
    def _received_at_utc(cls, value: datetime) -> datetime:
        return _utc(value)

    @field_validator("message_id", "in_reply_to")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class ThreadLink(BaseModel):
    """A conversation thread. Members are appended, never removed."""

    thread_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    tenant_id: uuid.UUID
    root_message_id: uuid.UUID
    member_message_ids: list[uuid.UUID] = Field(default_factory=list)


class ConversationThread(BaseModel):
    """Read view over a thread and its messages, oldest first."""

    thread_id: uuid.UUID
    tenant_id: uuid.UUID
    message_ids: list[uuid.UUID]
    participants: list[str]
    started_at: datetime | None = None
    last_activity_at: datetime | None = None


class EnqueueRecord(BaseModel):
    """Ledger entry proving a dedupe key was handed to the work queue."""

    tenant_id: uuid.UUID
    dedupe_key: str
    message_id: uuid.UUID
    queued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Watcher(BaseModel):
    """An address silently copied on outbound correspondence."""

    email: str
    is_active: bool = True
    notify: bool | None = Field(
        default=None,
        description="Entity-level opt-out; only an explicit False excludes",
    )


class WatcherSet(BaseModel):
    """The three watcher levels supplied by administrative surfaces."""

    tenant_global: list[Watcher] = Field(default_factory=list)
    account_level: list[Watcher] = Field(default_factory=list)
    entity_level: list[Watcher] = Field(default_factory=list)
