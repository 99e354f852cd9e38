"""Short-lived IMAP session wrapping stdlib imaplib with asyncio.to_thread.

One :class:`MailSession` is opened per account per pass and closed when
the pass is done with it.  Messages are fetched with ``BODY.PEEK[]`` so
the server never flags them ``\\Seen`` on its own; the caller marks them
explicitly once they are handled locally.
"""

from __future__ import annotations

import asyncio
import imaplib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from pydantic import SecretStr

from .config import SessionConfig
from .errors import (
    AccountSessionError,
    MailAuthenticationError,
    MailConnectionError,
    MailProtocolError,
)

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class SessionParams:
    """Decrypted connection parameters for one account."""

    host: str
    port: int
    use_tls: bool
    username: str
    password: SecretStr
    mailbox: str = "INBOX"
    connect_timeout: float = 10.0
    auth_timeout: float = 5.0
    command_timeout: float = 30.0

    @classmethod
    def from_config(
        cls,
        *,
        host: str,
        port: int,
        use_tls: bool,
        username: str,
        password: str,
        config: SessionConfig,
    ) -> SessionParams:
        return cls(
            host=host,
            port=port,
            use_tls=use_tls,
            username=username,
            password=SecretStr(password),
            mailbox=config.mailbox,
            connect_timeout=config.connect_timeout_seconds,
            auth_timeout=config.auth_timeout_seconds,
            command_timeout=config.command_timeout_seconds,
        )


@dataclass
class FetchedEmail:
    """Raw email data fetched from IMAP."""

    uid: str
    raw_bytes: bytes


class MailSession:
    """Async-friendly IMAP session for a single mailbox.

    All blocking ``imaplib`` calls run in a worker thread.  Each call is
    bounded twice: by the socket timeout, and by an outer
    ``asyncio.wait_for`` slightly longer than it.
    """

    def __init__(self, params: SessionParams) -> None:
        self._params = params
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    async def __aenter__(self) -> MailSession:
        try:
            await self.connect()
        except BaseException:
            await self.disconnect()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, and select the configured mailbox."""
        params = self._params
        budget = params.connect_timeout + params.auth_timeout + params.command_timeout
        await self._run(self._connect_sync, timeout=budget)
        logger.info("imap_connected", host=params.host, mailbox=params.mailbox)

    def _connect_sync(self) -> None:
        params = self._params
        try:
            if params.use_tls:
                conn = imaplib.IMAP4_SSL(params.host, params.port, timeout=params.connect_timeout)
            else:
                conn = imaplib.IMAP4(params.host, params.port, timeout=params.connect_timeout)
        except imaplib.IMAP4.error as exc:
            raise MailConnectionError(f"could not connect to {params.host}: {exc}") from exc
        self._conn = conn

        self._set_timeout(params.auth_timeout)
        try:
            conn.login(params.username, params.password.get_secret_value())
        except imaplib.IMAP4.error as exc:
            raise MailAuthenticationError(f"login rejected for {params.username}: {exc}") from exc

        self._set_timeout(params.command_timeout)
        status, data = conn.select(params.mailbox)
        if status != "OK":
            raise MailProtocolError(f"SELECT {params.mailbox} failed: {_describe(data)}")

    def _set_timeout(self, seconds: float) -> None:
        sock = getattr(self._conn, "sock", None)
        if sock is not None:
            sock.settimeout(seconds)

    async def disconnect(self) -> None:
        """Close mailbox and logout. Never raises."""
        if self._conn is None:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._disconnect_sync),
                timeout=self._params.command_timeout,
            )
        except (TimeoutError, OSError, imaplib.IMAP4.error) as exc:
            logger.debug("imap_disconnect_error", error=str(exc))
        finally:
            self._conn = None
        logger.info("imap_disconnected", host=self._params.host)

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except imaplib.IMAP4.error:
            pass
        try:
            self._conn.logout()
        except imaplib.IMAP4.error:
            pass

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def search_unseen(self) -> list[str]:
        """UIDs of all messages without the ``\\Seen`` flag."""
        return await self._run(self._search_unseen_sync)

    def _search_unseen_sync(self) -> list[str]:
        conn = self._require_conn()
        status, data = conn.uid("SEARCH", None, "UNSEEN")
        if status != "OK":
            raise MailProtocolError(f"SEARCH UNSEEN failed: {_describe(data)}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    async def fetch(self, uid: str) -> FetchedEmail:
        """Fetch the full body of *uid* without setting ``\\Seen``."""
        return await self._run(self._fetch_sync, uid)

    def _fetch_sync(self, uid: str) -> FetchedEmail:
        conn = self._require_conn()
        status, data = conn.uid("FETCH", uid, "(BODY.PEEK[])")
        if status != "OK" or not data:
            raise MailProtocolError(f"FETCH {uid} failed: {_describe(data)}")

        for item in data:
            if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
                return FetchedEmail(uid=uid, raw_bytes=item[1])
        raise MailProtocolError(f"FETCH {uid} returned no message body")

    async def mark_seen(self, uid: str) -> None:
        await self._run(self._mark_seen_sync, uid)

    def _mark_seen_sync(self, uid: str) -> None:
        conn = self._require_conn()
        status, data = conn.uid("STORE", uid, "+FLAGS", "(\\Seen)")
        if status != "OK":
            raise MailProtocolError(f"STORE {uid} +FLAGS failed: {_describe(data)}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise MailConnectionError("session is not connected")
        return self._conn

    async def _run(self, fn: Callable[..., T], *args: Any, timeout: float | None = None) -> T:
        """Run *fn* in a worker thread and map transport failures."""
        limit = timeout if timeout is not None else self._params.command_timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=limit + 1.0)
        except AccountSessionError:
            raise
        except TimeoutError as exc:
            raise MailConnectionError(f"IMAP operation timed out after {limit}s") from exc
        except imaplib.IMAP4.abort as exc:
            raise MailConnectionError(f"IMAP connection aborted: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise MailProtocolError(str(exc)) from exc
        except OSError as exc:
            raise MailConnectionError(f"IMAP transport error: {exc}") from exc


async def verify_session(params: SessionParams) -> None:
    """Connect, login, select, and disconnect. Raises on any failure."""
    session = MailSession(params)
    try:
        await session.connect()
    finally:
        await session.disconnect()


def _describe(data: Any) -> str:
    if not data:
        return "no response"
    first = data[0]
    if isinstance(first, bytes):
        return first.decode(errors="replace")
    return str(first)
