"""SQLAlchemy ORM models for the poller schema.

Column types are kept dialect-neutral (``Uuid``, ``JSON``) so the same
models run on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    type_annotation_map = {datetime: DateTime(timezone=True)}


class MailboxAccountRow(Base):
    __tablename__ = "mailbox_accounts"

    account_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    email_address: Mapped[str] = mapped_column(Text, nullable=False)

    protocol_host: Mapped[str] = mapped_column(Text, nullable=False, default="")
    protocol_port: Mapped[int] = mapped_column(Integer, nullable=False, default=993)
    protocol_use_tls: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    protocol_username: Mapped[str] = mapped_column(Text, nullable=False)
    protocol_secret: Mapped[str] = mapped_column(Text, nullable=False, default="")

    outbound_host: Mapped[str | None] = mapped_column(Text)
    outbound_port: Mapped[int | None] = mapped_column(Integer)
    outbound_use_tls: Mapped[bool | None] = mapped_column(Boolean)
    outbound_username: Mapped[str | None] = mapped_column(Text)
    outbound_secret: Mapped[str | None] = mapped_column(Text)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_fetch_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    fetch_interval_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=120_000)
    last_fetch_at: Mapped[datetime | None] = mapped_column()
    last_fetch_status: Mapped[str] = mapped_column(Text, nullable=False, default="never")
    last_fetch_error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_mailbox_accounts_eligible", "is_active", "auto_fetch_enabled"),
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    account_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    message_id: Mapped[str | None] = mapped_column(Text)
    dedupe_key: Mapped[str] = mapped_column(Text, nullable=False)

    sender_email: Mapped[str] = mapped_column(Text, nullable=False)
    sender_name: Mapped[str] = mapped_column(Text, nullable=False, default="")
    to_addresses: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    cc_addresses: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body_html: Mapped[str] = mapped_column(Text, nullable=False, default="")
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    in_reply_to: Mapped[str | None] = mapped_column(Text)
    references: Mapped[list] = mapped_column("reference_ids", JSON, nullable=False, default=list)
    source_channel: Mapped[str] = mapped_column(Text, nullable=False, default="poll")
    thread_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_messages_tenant_dedupe_key"),
        Index("ix_messages_tenant_message_id", "tenant_id", "message_id"),
        Index("ix_messages_tenant_composite", "tenant_id", "subject", "sender_email", "received_at"),
        Index("ix_messages_thread", "thread_id"),
    )


class ThreadLinkRow(Base):
    __tablename__ = "thread_links"

    thread_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    root_message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("messages.id", ondelete="RESTRICT"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=_now)

    members: Mapped[list[ThreadMemberRow]] = relationship(
        back_populates="thread",
        order_by="ThreadMemberRow.position",
        lazy="selectin",
    )


class ThreadMemberRow(Base):
    __tablename__ = "thread_members"

    thread_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("thread_links.thread_id", ondelete="RESTRICT"),
        primary_key=True,
    )
    position: Mapped[int] = mapped_column(Integer, primary_key=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("messages.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    added_at: Mapped[datetime] = mapped_column(nullable=False, default=_now)

    thread: Mapped[ThreadLinkRow] = relationship(back_populates="members")


class EnqueueRecordRow(Base):
    __tablename__ = "enqueue_records"

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    dedupe_key: Mapped[str] = mapped_column(Text, primary_key=True)
    message_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    queued_at: Mapped[datetime] = mapped_column(nullable=False, default=_now)


def as_utc(value: datetime | None) -> datetime | None:
    """Re-attach UTC to timestamps read back from backends that drop it."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
