"""Tests for mailpoll.parser."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailpoll.errors import MessageParseError
from mailpoll.parser import MessageNormalizer
from mailpoll_schema import MailboxAccount, SourceChannel

from tests.conftest import TENANT_ID, _build_multipart_email, _build_plain_email


@pytest.fixture
def normalizer() -> MessageNormalizer:
    return MessageNormalizer()


class TestHeaders:
    def test_plain_email(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(_build_plain_email(cc="a@example.com, B <b@example.com>"), account=account)

        assert message.message_id == "<test-001@example.com>"
        assert message.subject == "Test Subject"
        assert message.sender.email == "customer@example.com"
        assert [a.email for a in message.to] == ["support@acme.test"]
        assert [a.email for a in message.cc] == ["a@example.com", "b@example.com"]
        assert message.cc[1].name == "B"
        assert message.body_text.strip() == "Hello, World!"
        assert message.tenant_id == TENANT_ID
        assert message.account_id == account.account_id
        assert message.source_channel is SourceChannel.POLL

    def test_source_channel_passed_through(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(
            _build_plain_email(),
            account=account,
            source_channel=SourceChannel.WEBHOOK,
        )
        assert message.source_channel is SourceChannel.WEBHOOK

    def test_missing_subject(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(_build_plain_email(subject=None), account=account)
        assert message.subject == "(No Subject)"

    def test_missing_message_id_is_none(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(_build_plain_email(message_id=None), account=account)
        assert message.message_id is None

    def test_reply_headers(self, normalizer: MessageNormalizer, account: MailboxAccount):
        raw = _build_plain_email(
            in_reply_to="<parent@example.com>",
            references="<root@example.com>   <parent@example.com>",
        )
        message = normalizer.parse(raw, account=account)
        assert message.in_reply_to == "<parent@example.com>"
        assert message.references == ["<root@example.com>", "<parent@example.com>"]

    def test_in_reply_to_takes_first_angle_token(
        self,
        normalizer: MessageNormalizer,
        account: MailboxAccount,
    ):
        raw = _build_plain_email(in_reply_to="<a@example.com> (Jane's message of Monday)")
        message = normalizer.parse(raw, account=account)
        assert message.in_reply_to == "<a@example.com>"


class TestSender:
    def test_display_name(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(
            _build_plain_email(from_addr='"Jane Customer" <jane@example.com>'),
            account=account,
        )
        assert message.sender.email == "jane@example.com"
        assert message.sender.name == "Jane Customer"

    def test_falls_back_to_sender_header(self, normalizer: MessageNormalizer, account: MailboxAccount):
        raw = _build_plain_email(from_addr=None, extra_headers={"Sender": "agent@example.com"})
        assert normalizer.parse(raw, account=account).sender.email == "agent@example.com"

    def test_falls_back_to_reply_to(self, normalizer: MessageNormalizer, account: MailboxAccount):
        raw = _build_plain_email(from_addr=None, extra_headers={"Reply-To": "replies@example.com"})
        assert normalizer.parse(raw, account=account).sender.email == "replies@example.com"

    def test_unknown_sender(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(_build_plain_email(from_addr=None), account=account)
        assert message.sender.email == "unknown@unknown.com"
        assert message.sender.name == "Unknown"


class TestReceivedAt:
    def test_date_normalized_to_utc(self, normalizer: MessageNormalizer, account: MailboxAccount):
        raw = _build_plain_email(date="Sun, 01 Jun 2025 14:00:00 +0200")
        message = normalizer.parse(raw, account=account)
        assert message.received_at == datetime(2025, 6, 1, 12, 0, tzinfo=UTC)
        assert message.received_at.utcoffset().total_seconds() == 0

    def test_missing_date_uses_now(self, normalizer: MessageNormalizer, account: MailboxAccount):
        before = datetime.now(UTC)
        message = normalizer.parse(_build_plain_email(date=None), account=account)
        assert before <= message.received_at <= datetime.now(UTC)

    def test_garbage_date_uses_now(self, normalizer: MessageNormalizer, account: MailboxAccount):
        before = datetime.now(UTC)
        message = normalizer.parse(_build_plain_email(date="not a date"), account=account)
        assert message.received_at >= before


class TestBodies:
    def test_multipart_alternative(self, normalizer: MessageNormalizer, account: MailboxAccount):
        message = normalizer.parse(_build_multipart_email(), account=account)
        assert message.body_text.strip() == "Plain body"
        assert message.body_html.strip() == "<p>HTML body</p>"

    def test_attachment_text_not_used_as_body(
        self,
        normalizer: MessageNormalizer,
        account: MailboxAccount,
        multipart_eml_bytes: bytes,
    ):
        message = normalizer.parse(multipart_eml_bytes, account=account)
        assert "attached notes" not in message.body_text


class TestRejects:
    @pytest.mark.parametrize("raw", [b"", b"   \r\n  "])
    def test_empty_input(self, normalizer: MessageNormalizer, account: MailboxAccount, raw: bytes):
        with pytest.raises(MessageParseError):
            normalizer.parse(raw, account=account)

    def test_headerless_input(self, normalizer: MessageNormalizer, account: MailboxAccount):
        with pytest.raises(MessageParseError):
            normalizer.parse(b"this is not an email at all", account=account)
