"""Message normalizer: raw RFC 822 bytes -> canonical Message.

Everything in the input is untrusted.  Header lookups tolerate missing or
malformed values; only input that cannot be read as a message at all
raises :class:`MessageParseError`.
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
import re
from datetime import UTC, datetime

import structlog
from pydantic import ValidationError

from mailpoll_schema import Address, MailboxAccount, Message, SourceChannel

from .errors import MessageParseError

logger = structlog.get_logger()

UNKNOWN_SENDER = Address(email="unknown@unknown.com", name="Unknown")
NO_SUBJECT = "(No Subject)"

_ANGLE_TOKEN = re.compile(r"<[^<>\s]+>")


class MessageNormalizer:
    """Stateless parser bound to nothing; safe to share between accounts."""

    def parse(
        self,
        raw_bytes: bytes,
        *,
        account: MailboxAccount,
        source_channel: SourceChannel = SourceChannel.POLL,
    ) -> Message:
        if not raw_bytes or not raw_bytes.strip():
            raise MessageParseError("empty message")

        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            if not msg.keys():
                raise MessageParseError("message has no headers")

            body_text, body_html = self._extract_bodies(msg)
            return Message(
                message_id=_header(msg, "Message-ID"),
                tenant_id=account.tenant_id,
                account_id=account.account_id,
                sender=self._extract_sender(msg),
                to=_addresses(msg, "To"),
                cc=_addresses(msg, "Cc"),
                subject=_header(msg, "Subject") or NO_SUBJECT,
                body_text=body_text or "",
                body_html=body_html or "",
                received_at=_received_at(msg),
                in_reply_to=_first_reference(_header(msg, "In-Reply-To")),
                references=(_header(msg, "References") or "").split(),
                source_channel=source_channel,
            )
        except MessageParseError:
            raise
        except ValidationError as exc:
            raise MessageParseError(f"normalized message failed validation: {exc}") from exc
        except (ValueError, TypeError, LookupError, UnicodeError) as exc:
            raise MessageParseError(f"unreadable message: {exc}") from exc

    def _extract_sender(self, msg: email.message.Message) -> Address:
        """First address of From, then Sender, then Reply-To."""
        for name in ("From", "Sender", "Reply-To"):
            found = _addresses(msg, name)
            if found:
                return found[0]
        return UNKNOWN_SENDER

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if part.get_content_disposition() == "attachment":
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            if content_type == "text/plain" and body_text is not None:
                continue
            if content_type == "text/html" and body_html is not None:
                continue

            payload = _text_payload(part)
            if payload is None:
                continue
            if content_type == "text/plain":
                body_text = payload
            else:
                body_html = payload

        return body_text, body_html


def _header(msg: email.message.Message, name: str) -> str | None:
    try:
        value = msg.get(name)
    except (ValueError, TypeError, IndexError) as exc:
        logger.debug("header_unreadable", header=name, error=str(exc))
        return None
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _addresses(msg: email.message.Message, name: str) -> list[Address]:
    try:
        values = msg.get_all(name) or []
        pairs = email.utils.getaddresses([str(value) for value in values])
    except (ValueError, TypeError, IndexError) as exc:
        logger.debug("address_header_unreadable", header=name, error=str(exc))
        return []
    return [Address(email=addr, name=display) for display, addr in pairs if "@" in addr]


def _text_payload(part: email.message.Message) -> str | None:
    try:
        payload = part.get_content()
    except (LookupError, ValueError, AssertionError):
        raw = part.get_payload(decode=True)
        if not isinstance(raw, bytes):
            return None
        return raw.decode("utf-8", errors="replace")
    return payload if isinstance(payload, str) else None


def _first_reference(value: str | None) -> str | None:
    if value is None:
        return None
    match = _ANGLE_TOKEN.search(value)
    return match.group(0) if match else value.strip()


def _received_at(msg: email.message.Message) -> datetime:
    raw = _header(msg, "Date")
    if raw:
        try:
            parsed = email.utils.parsedate_to_datetime(raw)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    return datetime.now(UTC)
