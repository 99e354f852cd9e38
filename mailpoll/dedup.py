"""Identity resolution: dedupe keys and duplicate detection.

A message is identified by its protocol Message-ID.  Messages without
one get a derived key from subject, sender and a time bucket the width
of the dedup tolerance, so two copies inside one bucket collide on the
unique ``(tenant_id, dedupe_key)`` constraint.
"""

from __future__ import annotations

import hashlib
import math
import uuid

from mailpoll_schema import Message

from .config import DedupConfig
from .db.store import MessageStore

DERIVED_PREFIX = "derived:"


def compute_dedupe_key(message: Message, tolerance_seconds: int) -> str:
    if message.message_id:
        return message.message_id

    bucket = math.floor(message.received_at.timestamp() / tolerance_seconds)
    material = "\x1f".join(
        [message.subject, message.sender.email.strip().lower(), str(bucket)],
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{DERIVED_PREFIX}{digest}"


class DuplicateDetector:
    """Assigns dedupe keys and looks up earlier copies in the store."""

    def __init__(self, store: MessageStore, config: DedupConfig) -> None:
        self._store = store
        self._tolerance = config.tolerance_seconds

    @property
    def tolerance_seconds(self) -> int:
        return self._tolerance

    def assign_key(self, message: Message) -> Message:
        """Return *message* with its ``dedupe_key`` filled in."""
        return message.model_copy(
            update={"dedupe_key": compute_dedupe_key(message, self._tolerance)},
        )

    async def find_existing(self, message: Message) -> uuid.UUID | None:
        """Id of the stored message *message* duplicates, or None."""
        if not message.dedupe_key:
            message = self.assign_key(message)
        return await self._store.find_duplicate(message, self._tolerance)
