"""Per-message ingestion: normalize, filter, dedup, persist, thread, enqueue."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum

import structlog

from mailpoll_schema import Classification, MailboxAccount, Message, SourceChannel

from .db.store import MessageStore
from .dedup import DuplicateDetector
from .enqueuer import Enqueuer
from .errors import DuplicateMessageError, EnqueueError, PersistenceError
from .noise import NoiseFilter
from .parser import MessageNormalizer
from .threads import ThreadLinker

logger = structlog.get_logger()


class IngestOutcome(str, Enum):
    INGESTED = "ingested"
    DUPLICATE = "duplicate"
    SELF_ORIGINATED = "self_originated"
    AUTOMATED = "automated"


_FILTERED = {
    Classification.SELF_ORIGINATED: IngestOutcome.SELF_ORIGINATED,
    Classification.AUTOMATED: IngestOutcome.AUTOMATED,
}


@dataclass
class IngestResult:
    outcome: IngestOutcome
    message_id: uuid.UUID | None = None
    thread_id: uuid.UUID | None = None
    enqueue_failed: bool = False


class IngestionPipeline:
    """Turns one raw message into at most one stored, queued Message.

    :class:`MessageParseError` and :class:`PersistenceError` propagate so
    the caller can leave the message unseen for the next pass.  Every
    other result is terminal.
    """

    def __init__(
        self,
        normalizer: MessageNormalizer,
        noise: NoiseFilter,
        dedup: DuplicateDetector,
        store: MessageStore,
        linker: ThreadLinker,
        enqueuer: Enqueuer,
    ) -> None:
        self._normalizer = normalizer
        self._noise = noise
        self._dedup = dedup
        self._store = store
        self._linker = linker
        self._enqueuer = enqueuer

    async def ingest(
        self,
        raw_bytes: bytes,
        account: MailboxAccount,
        source_channel: SourceChannel = SourceChannel.POLL,
    ) -> IngestResult:
        message = self._normalizer.parse(raw_bytes, account=account, source_channel=source_channel)
        return await self.ingest_message(message, account)

    async def ingest_message(self, message: Message, account: MailboxAccount) -> IngestResult:
        classification = self._noise.classify(message, account)
        if classification is not Classification.GENUINE:
            logger.debug(
                "message_filtered",
                classification=classification.value,
                message_id=message.message_id,
            )
            return IngestResult(outcome=_FILTERED[classification])

        message = self._dedup.assign_key(message)
        existing = await self._dedup.find_existing(message)
        if existing is not None:
            logger.debug("message_duplicate", message_id=message.message_id, existing=str(existing))
            return IngestResult(outcome=IngestOutcome.DUPLICATE, message_id=existing)

        try:
            await self._store.create(message)
        except DuplicateMessageError:
            logger.info("message_duplicate_race", dedupe_key=message.dedupe_key)
            return IngestResult(outcome=IngestOutcome.DUPLICATE)

        thread_id = await self._linker.link(message)
        message = message.model_copy(update={"thread_id": thread_id})

        enqueue_failed = False
        try:
            await self._enqueuer.hand_off(message)
        except (EnqueueError, PersistenceError) as exc:
            enqueue_failed = True
            logger.error("enqueue_failed", message_id=str(message.id), error=str(exc))

        logger.info(
            "message_ingested",
            message_id=str(message.id),
            thread_id=str(thread_id) if thread_id else None,
        )
        return IngestResult(
            outcome=IngestOutcome.INGESTED,
            message_id=message.id,
            thread_id=thread_id,
            enqueue_failed=enqueue_failed,
        )
