"""Tests for mailpoll.imap_client."""

from __future__ import annotations

import imaplib
import socket
from unittest.mock import MagicMock, patch

import pytest
from pydantic import SecretStr

from mailpoll.config import SessionConfig
from mailpoll.errors import MailAuthenticationError, MailConnectionError, MailProtocolError
from mailpoll.imap_client import MailSession, SessionParams, verify_session

from tests.conftest import _build_plain_email


@pytest.fixture
def params(session_config: SessionConfig) -> SessionParams:
    return SessionParams.from_config(
        host="imap.acme.test",
        port=993,
        use_tls=True,
        username="support@acme.test",
        password="imap-password",
        config=session_config,
    )


def _make_mock_imap(
    *,
    search_uids: list[bytes] | None = None,
    fetch_data: dict[str, bytes] | None = None,
    search_status: str = "OK",
    store_status: str = "OK",
) -> MagicMock:
    """Create a mock imaplib.IMAP4_SSL with programmed responses."""
    mock = MagicMock()
    mock.login.return_value = ("OK", [b"Logged in"])
    mock.select.return_value = ("OK", [b"3"])
    mock.close.return_value = ("OK", [b"Closed"])
    mock.logout.return_value = ("BYE", [b"Bye"])

    search_data = b" ".join(search_uids or [])
    fetch_data = fetch_data or {}

    def handler(command: str, *args):
        if command == "SEARCH":
            return (search_status, [search_data])
        if command == "FETCH":
            raw = fetch_data.get(args[0])
            if raw is None:
                return ("OK", [None])
            return ("OK", [(b"1 (UID %s BODY[] {%d}" % (args[0].encode(), len(raw)), raw), b")"])
        if command == "STORE":
            return (store_status, [b"done"])
        return ("BAD", [b"unknown command"])

    mock.uid.side_effect = handler
    return mock


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_tls_login_select(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            session = MailSession(params)
            await session.connect()

            MockSSL.assert_called_once_with("imap.acme.test", 993, timeout=1.0)
            mock_conn.login.assert_called_once_with("support@acme.test", "imap-password")
            mock_conn.select.assert_called_once_with("INBOX")
            mock_conn.sock.settimeout.assert_called_with(1.0)

    @pytest.mark.asyncio
    async def test_connect_plain(self, session_config: SessionConfig):
        params = SessionParams(
            host="imap.acme.test",
            port=143,
            use_tls=False,
            username="u",
            password=SecretStr("p"),
        )
        with patch("mailpoll.imap_client.imaplib.IMAP4") as MockIMAP:
            MockIMAP.return_value = _make_mock_imap()
            await MailSession(params).connect()
            MockIMAP.assert_called_once_with("imap.acme.test", 143, timeout=10.0)

    @pytest.mark.asyncio
    async def test_unreachable_host(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.side_effect = ConnectionRefusedError("refused")
            with pytest.raises(MailConnectionError):
                await MailSession(params).connect()

    @pytest.mark.asyncio
    async def test_socket_timeout(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.side_effect = socket.timeout("timed out")
            with pytest.raises(MailConnectionError, match="timed out"):
                await MailSession(params).connect()

    @pytest.mark.asyncio
    async def test_login_rejected(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
            MockSSL.return_value = mock_conn
            with pytest.raises(MailAuthenticationError):
                await MailSession(params).connect()

    @pytest.mark.asyncio
    async def test_select_failure(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.select.return_value = ("NO", [b"Mailbox does not exist"])
            MockSSL.return_value = mock_conn
            with pytest.raises(MailProtocolError, match="does not exist"):
                await MailSession(params).connect()

    @pytest.mark.asyncio
    async def test_context_manager_logs_out_after_rejected_login(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("AUTHENTICATIONFAILED")
            MockSSL.return_value = mock_conn
            with pytest.raises(MailAuthenticationError):
                async with MailSession(params):
                    pass
            mock_conn.logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_context_manager_logs_out_after_select_failure(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.select.return_value = ("NO", [b"Mailbox does not exist"])
            MockSSL.return_value = mock_conn
            with pytest.raises(MailProtocolError):
                async with MailSession(params):
                    pass
            mock_conn.logout.assert_called_once()


class TestMessageRetrieval:
    @pytest.mark.asyncio
    async def test_search_unseen(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(search_uids=[b"7", b"9"])
            MockSSL.return_value = mock_conn
            async with MailSession(params) as session:
                uids = await session.search_unseen()

            assert uids == ["7", "9"]
            mock_conn.uid.assert_any_call("SEARCH", None, "UNSEEN")

    @pytest.mark.asyncio
    async def test_search_nothing_unseen(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            async with MailSession(params) as session:
                assert await session.search_unseen() == []

    @pytest.mark.asyncio
    async def test_search_failure(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(search_status="NO")
            async with MailSession(params) as session:
                with pytest.raises(MailProtocolError):
                    await session.search_unseen()

    @pytest.mark.asyncio
    async def test_fetch_uses_peek(self, params: SessionParams):
        raw = _build_plain_email()
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(search_uids=[b"7"], fetch_data={"7": raw})
            MockSSL.return_value = mock_conn
            async with MailSession(params) as session:
                fetched = await session.fetch("7")

            assert fetched.uid == "7"
            assert fetched.raw_bytes == raw
            mock_conn.uid.assert_any_call("FETCH", "7", "(BODY.PEEK[])")
            store_calls = [c for c in mock_conn.uid.call_args_list if c.args[0] == "STORE"]
            assert store_calls == []

    @pytest.mark.asyncio
    async def test_fetch_without_body(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            async with MailSession(params) as session:
                with pytest.raises(MailProtocolError, match="no message body"):
                    await session.fetch("99")

    @pytest.mark.asyncio
    async def test_mark_seen(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            async with MailSession(params) as session:
                await session.mark_seen("7")
            mock_conn.uid.assert_any_call("STORE", "7", "+FLAGS", "(\\Seen)")

    @pytest.mark.asyncio
    async def test_mark_seen_rejected(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(store_status="NO")
            async with MailSession(params) as session:
                with pytest.raises(MailProtocolError):
                    await session.mark_seen("7")

    @pytest.mark.asyncio
    async def test_dropped_connection(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.uid.side_effect = imaplib.IMAP4.abort("socket error: EOF")
            MockSSL.return_value = mock_conn
            async with MailSession(params) as session:
                with pytest.raises(MailConnectionError):
                    await session.search_unseen()

    @pytest.mark.asyncio
    async def test_not_connected(self, params: SessionParams):
        with pytest.raises(MailConnectionError, match="not connected"):
            await MailSession(params).search_unseen()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_closes_and_logs_out(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            session = MailSession(params)
            await session.connect()
            await session.disconnect()
            mock_conn.close.assert_called_once()
            mock_conn.logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_disconnect_swallows_server_errors(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.close.side_effect = imaplib.IMAP4.error("no mailbox selected")
            mock_conn.logout.side_effect = OSError("broken pipe")
            MockSSL.return_value = mock_conn
            session = MailSession(params)
            await session.connect()
            await session.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_when_never_connected(self, params: SessionParams):
        await MailSession(params).disconnect()


class TestVerifySession:
    @pytest.mark.asyncio
    async def test_verify_ok(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await verify_session(params)
            mock_conn.logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_verify_login_failure_still_disconnects(self, params: SessionParams):
        with patch("mailpoll.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("bad credentials")
            MockSSL.return_value = mock_conn
            with pytest.raises(MailAuthenticationError):
                await verify_session(params)
            mock_conn.logout.assert_called_once()
