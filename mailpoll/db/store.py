"""Message store, thread store and enqueue ledger.

All three share the engine owned by :class:`~mailpoll.db.engine.Database`.
Timestamps are bound as UTC and re-tagged as UTC on the way out.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailpoll_schema import (
    Address,
    ConversationThread,
    Message,
    SourceChannel,
    ThreadLink,
)

from ..errors import DuplicateMessageError, PersistenceError
from .models import (
    EnqueueRecordRow,
    MessageRow,
    ThreadLinkRow,
    ThreadMemberRow,
    as_utc,
)

logger = structlog.get_logger()


class MessageStore:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def find_duplicate(self, message: Message, tolerance_seconds: int) -> uuid.UUID | None:
        """Return the id of a stored message this one duplicates, if any.

        Matches the same tenant on the protocol Message-ID, on the dedupe
        key, or on subject plus case-folded sender with ``received_at``
        within ``±tolerance_seconds`` (inclusive).
        """
        window = timedelta(seconds=tolerance_seconds)
        received = message.received_at.astimezone(UTC)

        clauses = [
            MessageRow.dedupe_key == message.dedupe_key,
            (
                (MessageRow.subject == message.subject)
                & (func.lower(MessageRow.sender_email) == message.sender.email.lower())
                & MessageRow.received_at.between(received - window, received + window)
            ),
        ]
        if message.message_id:
            clauses.append(MessageRow.message_id == message.message_id)

        stmt = (
            select(MessageRow.id)
            .where(MessageRow.tenant_id == message.tenant_id, or_(*clauses))
            .limit(1)
        )
        try:
            async with self._sessions() as session:
                return (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"duplicate lookup failed: {exc}") from exc

    async def create(self, message: Message) -> Message:
        """Insert *message*.

        Raises :class:`DuplicateMessageError` when a concurrent writer
        already stored the same ``(tenant_id, dedupe_key)``.
        """
        try:
            async with self._sessions() as session, session.begin():
                session.add(_message_to_row(message))
        except IntegrityError as exc:
            raise DuplicateMessageError(
                f"message with dedupe key {message.dedupe_key!r} already stored",
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not store message: {exc}") from exc
        return message

    async def get(self, message_row_id: uuid.UUID) -> Message | None:
        try:
            async with self._sessions() as session:
                row = await session.get(MessageRow, message_row_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"message lookup failed: {exc}") from exc
        return _row_to_message(row) if row is not None else None

    async def find_by_message_ids(
        self,
        tenant_id: uuid.UUID,
        message_ids: list[str],
    ) -> dict[str, Message]:
        """Look up stored messages by protocol Message-ID within a tenant."""
        if not message_ids:
            return {}
        stmt = select(MessageRow).where(
            MessageRow.tenant_id == tenant_id,
            MessageRow.message_id.in_(message_ids),
        )
        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"message lookup failed: {exc}") from exc
        return {row.message_id: _row_to_message(row) for row in rows}

    async def list_by_thread(self, thread_id: uuid.UUID) -> list[Message]:
        stmt = (
            select(MessageRow)
            .where(MessageRow.thread_id == thread_id)
            .order_by(MessageRow.received_at, MessageRow.created_at)
        )
        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"thread listing failed: {exc}") from exc
        return [_row_to_message(row) for row in rows]


class ThreadStore:
    """Append-only thread membership."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def thread_of(self, message_row_id: uuid.UUID) -> uuid.UUID | None:
        stmt = select(ThreadMemberRow.thread_id).where(ThreadMemberRow.message_id == message_row_id)
        try:
            async with self._sessions() as session:
                return (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"thread lookup failed: {exc}") from exc

    async def start(self, tenant_id: uuid.UUID, root_message_id: uuid.UUID) -> ThreadLink:
        """Open a new thread whose first member is *root_message_id*."""
        thread_id = uuid.uuid4()
        try:
            async with self._sessions() as session, session.begin():
                session.add(
                    ThreadLinkRow(
                        thread_id=thread_id,
                        tenant_id=tenant_id,
                        root_message_id=root_message_id,
                    ),
                )
                await session.flush()
                session.add(
                    ThreadMemberRow(thread_id=thread_id, position=0, message_id=root_message_id),
                )
                await session.execute(
                    update(MessageRow)
                    .where(MessageRow.id == root_message_id)
                    .values(thread_id=thread_id),
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not start thread: {exc}") from exc

        logger.debug("thread_started", thread_id=str(thread_id), root=str(root_message_id))
        return ThreadLink(
            thread_id=thread_id,
            tenant_id=tenant_id,
            root_message_id=root_message_id,
            member_message_ids=[root_message_id],
        )

    async def append(self, thread_id: uuid.UUID, message_row_id: uuid.UUID) -> None:
        """Add *message_row_id* as the newest member of *thread_id*."""
        try:
            async with self._sessions() as session, session.begin():
                last = await session.scalar(
                    select(func.max(ThreadMemberRow.position)).where(
                        ThreadMemberRow.thread_id == thread_id,
                    ),
                )
                session.add(
                    ThreadMemberRow(
                        thread_id=thread_id,
                        position=0 if last is None else last + 1,
                        message_id=message_row_id,
                    ),
                )
                await session.execute(
                    update(MessageRow)
                    .where(MessageRow.id == message_row_id)
                    .values(thread_id=thread_id),
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not append to thread: {exc}") from exc

    async def get(self, thread_id: uuid.UUID) -> ThreadLink | None:
        try:
            async with self._sessions() as session:
                row = await session.get(ThreadLinkRow, thread_id)
                if row is None:
                    return None
                return ThreadLink(
                    thread_id=row.thread_id,
                    tenant_id=row.tenant_id,
                    root_message_id=row.root_message_id,
                    member_message_ids=[member.message_id for member in row.members],
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"thread lookup failed: {exc}") from exc

    async def get_conversation(self, thread_id: uuid.UUID) -> ConversationThread | None:
        """Thread members with their participants and activity window."""
        link = await self.get(thread_id)
        if link is None:
            return None

        stmt = select(MessageRow).where(MessageRow.id.in_(link.member_message_ids))
        try:
            async with self._sessions() as session:
                rows = {row.id: row for row in (await session.execute(stmt)).scalars().all()}
        except SQLAlchemyError as exc:
            raise PersistenceError(f"conversation lookup failed: {exc}") from exc

        participants: list[str] = []
        seen: set[str] = set()
        timestamps: list[datetime] = []
        for member_id in link.member_message_ids:
            row = rows.get(member_id)
            if row is None:
                continue
            timestamps.append(as_utc(row.received_at))
            addresses = [row.sender_email]
            addresses += [entry["email"] for entry in row.to_addresses]
            addresses += [entry["email"] for entry in row.cc_addresses]
            for address in addresses:
                folded = address.lower()
                if folded and folded not in seen:
                    seen.add(folded)
                    participants.append(folded)

        return ConversationThread(
            thread_id=link.thread_id,
            tenant_id=link.tenant_id,
            message_ids=link.member_message_ids,
            participants=participants,
            started_at=min(timestamps) if timestamps else None,
            last_activity_at=max(timestamps) if timestamps else None,
        )


class EnqueueLedger:
    """At most one hand-off per ``(tenant_id, dedupe_key)``."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = sessions

    async def append(
        self,
        tenant_id: uuid.UUID,
        dedupe_key: str,
        message_id: uuid.UUID,
    ) -> bool:
        """Record a hand-off. Returns False if the key was already recorded."""
        try:
            async with self._sessions() as session, session.begin():
                session.add(
                    EnqueueRecordRow(
                        tenant_id=tenant_id,
                        dedupe_key=dedupe_key,
                        message_id=message_id,
                        queued_at=datetime.now(UTC),
                    ),
                )
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise PersistenceError(f"could not record enqueue: {exc}") from exc
        return True

    async def contains(self, tenant_id: uuid.UUID, dedupe_key: str) -> bool:
        try:
            async with self._sessions() as session:
                row = await session.get(EnqueueRecordRow, (tenant_id, dedupe_key))
        except SQLAlchemyError as exc:
            raise PersistenceError(f"enqueue lookup failed: {exc}") from exc
        return row is not None


# ----------------------------------------------------------------------
# Row <-> model conversion
# ----------------------------------------------------------------------


def _message_to_row(message: Message) -> MessageRow:
    return MessageRow(
        id=message.id,
        tenant_id=message.tenant_id,
        account_id=message.account_id,
        message_id=message.message_id,
        dedupe_key=message.dedupe_key,
        sender_email=message.sender.email,
        sender_name=message.sender.name,
        to_addresses=[address.model_dump() for address in message.to],
        cc_addresses=[address.model_dump() for address in message.cc],
        subject=message.subject,
        body_text=message.body_text,
        body_html=message.body_html,
        received_at=message.received_at.astimezone(UTC),
        in_reply_to=message.in_reply_to,
        references=list(message.references),
        source_channel=message.source_channel.value,
        thread_id=message.thread_id,
    )


def _row_to_message(row: MessageRow) -> Message:
    return Message(
        id=row.id,
        message_id=row.message_id,
        tenant_id=row.tenant_id,
        account_id=row.account_id,
        sender=Address(email=row.sender_email, name=row.sender_name),
        to=[Address(**entry) for entry in row.to_addresses],
        cc=[Address(**entry) for entry in row.cc_addresses],
        subject=row.subject,
        body_text=row.body_text,
        body_html=row.body_html,
        received_at=as_utc(row.received_at),
        in_reply_to=row.in_reply_to,
        references=list(row.references),
        source_channel=SourceChannel(row.source_channel),
        dedupe_key=row.dedupe_key,
        thread_id=row.thread_id,
    )
