"""Thread linker: attach each new message to its conversation."""

from __future__ import annotations

import re
import uuid

import structlog

from mailpoll_schema import ConversationThread, Message

from .db.store import MessageStore, ThreadStore
from .errors import PersistenceError, ThreadingError

logger = structlog.get_logger()

MESSAGE_ID_PATTERN = re.compile(r"^<[^<>@\s]+@[^<>@\s]+>$")


def candidate_parents(message: Message) -> list[str]:
    """Parent Message-IDs to try, most specific first.

    Tokens that are not Message-IDs are skipped.  Raises
    :class:`ThreadingError` if the message has reply headers but none of
    them is usable.
    """
    candidates: list[str] = []
    if message.in_reply_to:
        candidates.append(message.in_reply_to)
    candidates.extend(reversed(message.references))

    ordered: list[str] = []
    for candidate in candidates:
        if not MESSAGE_ID_PATTERN.match(candidate):
            logger.debug("malformed_reference_skipped", reference=candidate)
            continue
        if candidate not in ordered:
            ordered.append(candidate)

    if candidates and not ordered:
        raise ThreadingError(f"no usable message reference in {candidates!r}")
    return ordered


class ThreadLinker:
    def __init__(self, messages: MessageStore, threads: ThreadStore) -> None:
        self._messages = messages
        self._threads = threads

    async def link(self, message: Message) -> uuid.UUID | None:
        """Place a persisted *message* in a thread and return the thread id.

        Never raises.  If the reply headers cannot be resolved the message
        becomes the root of its own thread; if even that fails, None.
        """
        try:
            return await self._link_to_parent(message)
        except (ThreadingError, PersistenceError) as exc:
            logger.warning(
                "thread_link_failed",
                message_id=message.message_id,
                error=str(exc),
            )
        except Exception:
            logger.exception("thread_link_failed", message_id=message.message_id)

        try:
            link = await self._threads.start(message.tenant_id, message.id)
        except PersistenceError as exc:
            logger.error("thread_start_failed", message_id=message.message_id, error=str(exc))
            return None
        except Exception:
            logger.exception("thread_start_failed", message_id=message.message_id)
            return None
        return link.thread_id

    async def _link_to_parent(self, message: Message) -> uuid.UUID:
        candidates = candidate_parents(message)
        parents = await self._messages.find_by_message_ids(message.tenant_id, candidates)

        for candidate in candidates:
            parent = parents.get(candidate)
            if parent is None or parent.id == message.id:
                continue

            thread_id = await self._threads.thread_of(parent.id)
            if thread_id is None:
                thread_id = (await self._threads.start(message.tenant_id, parent.id)).thread_id
            await self._threads.append(thread_id, message.id)
            logger.debug("thread_joined", thread_id=str(thread_id), parent=candidate)
            return thread_id

        link = await self._threads.start(message.tenant_id, message.id)
        return link.thread_id

    async def get_conversation(self, thread_id: uuid.UUID) -> ConversationThread | None:
        return await self._threads.get_conversation(thread_id)
