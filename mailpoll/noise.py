"""Noise filter: drop self-originated and automated messages before storage."""

from __future__ import annotations

from mailpoll_schema import Classification, MailboxAccount, Message

from .config import NoiseConfig


class NoiseFilter:
    def __init__(self, config: NoiseConfig) -> None:
        self._subject_patterns = [p.lower() for p in config.subject_patterns if p]
        self._sender_patterns = [p.lower() for p in config.sender_patterns if p]
        self._sender_prefixes = [p.lower() for p in config.sender_prefixes if p]

    def classify(self, message: Message, account: MailboxAccount) -> Classification:
        sender = message.sender.email.strip().lower()

        if sender in _own_addresses(account):
            return Classification.SELF_ORIGINATED

        subject = message.subject.lower()
        if any(pattern in subject for pattern in self._subject_patterns):
            return Classification.AUTOMATED
        if any(pattern in sender for pattern in self._sender_patterns):
            return Classification.AUTOMATED
        local_part = sender.partition("@")[0]
        if any(local_part.startswith(prefix) for prefix in self._sender_prefixes):
            return Classification.AUTOMATED

        return Classification.GENUINE


def _own_addresses(account: MailboxAccount) -> set[str]:
    own = {account.email_address.strip().lower()}
    username = account.protocol_config.username.strip().lower()
    if "@" in username:
        own.add(username)
    own.discard("")
    return own
