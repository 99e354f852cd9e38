"""Exception hierarchy for the ingestion pipeline.

Session errors are scoped to one account and recorded on its fetch
state.  Parse and persistence errors are scoped to one message.
"""

from __future__ import annotations


class IngestionError(Exception):
    """Base class for every error raised by the poller."""


class AccountSessionError(IngestionError):
    """A mailbox session could not complete; retried on the next pass."""


class MailConnectionError(AccountSessionError):
    """Server unreachable, connection dropped, or a timeout expired."""


class MailAuthenticationError(AccountSessionError):
    """The server rejected the account credentials."""


class MailProtocolError(AccountSessionError):
    """The server answered with a non-OK status or a malformed response."""


class AccountUnavailableError(IngestionError):
    """The account does not exist, is inactive, or has no IMAP host."""


class CredentialError(IngestionError):
    """A stored credential is missing or could not be decrypted."""


class MessageParseError(IngestionError):
    """Raw message bytes could not be turned into a Message."""


class PersistenceError(IngestionError):
    """The message store rejected a write or lookup."""


class DuplicateMessageError(PersistenceError):
    """The tenant already holds a message with this dedupe key."""


class ThreadingError(IngestionError):
    """Reply headers could not be resolved to a thread."""


class EnqueueError(IngestionError):
    """The downstream work queue did not accept the hand-off."""
