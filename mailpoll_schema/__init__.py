from .models import (
    Address,
    Classification,
    ConversationThread,
    EnqueueRecord,
    FetchStatus,
    MailboxAccount,
    Message,
    OutboundConfig,
    Priority,
    ProtocolConfig,
    SecretKind,
    SourceChannel,
    ThreadLink,
    Watcher,
    WatcherSet,
)

__all__ = [
    "Address",
    "Classification",
    "ConversationThread",
    "EnqueueRecord",
    "FetchStatus",
    "MailboxAccount",
    "Message",
    "OutboundConfig",
    "Priority",
    "ProtocolConfig",
    "SecretKind",
    "SourceChannel",
    "ThreadLink",
    "Watcher",
    "WatcherSet",
]
