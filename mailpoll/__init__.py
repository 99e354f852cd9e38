"""mailpoll: multi-tenant IMAP polling and ingestion.

Public API re-exported here for convenience::

    from mailpoll import PollerConfig, PollerService, PollOrchestrator
"""

from .config import (
    DatabaseConfig,
    DedupConfig,
    NoiseConfig,
    PollerConfig,
    QueueConfig,
    RetryConfig,
    SessionConfig,
    VaultConfig,
)
from .dedup import DuplicateDetector, compute_dedupe_key
from .enqueuer import Enqueuer, HandOff, KafkaWorkQueue, WorkQueue
from .errors import (
    AccountSessionError,
    AccountUnavailableError,
    CredentialError,
    DuplicateMessageError,
    EnqueueError,
    IngestionError,
    MailAuthenticationError,
    MailConnectionError,
    MailProtocolError,
    MessageParseError,
    PersistenceError,
    ThreadingError,
)
from .health import create_health_app
from .imap_client import FetchedEmail, MailSession, SessionParams
from .logging import setup_logging
from .noise import NoiseFilter
from .orchestrator import AccountFetchResult, PassResult, PassState, PollOrchestrator
from .parser import MessageNormalizer
from .pipeline import IngestionPipeline, IngestOutcome, IngestResult
from .retry import with_retry
from .service import PollerService
from .shutdown import install_signal_handlers
from .threads import ThreadLinker
from .vault import CredentialVault
from .watchers import aggregate_watchers, merge_into_bcc

__all__ = [
    "AccountFetchResult",
    "AccountSessionError",
    "AccountUnavailableError",
    "CredentialError",
    "CredentialVault",
    "DatabaseConfig",
    "DedupConfig",
    "DuplicateDetector",
    "DuplicateMessageError",
    "EnqueueError",
    "Enqueuer",
    "FetchedEmail",
    "HandOff",
    "IngestOutcome",
    "IngestResult",
    "IngestionError",
    "IngestionPipeline",
    "KafkaWorkQueue",
    "MailAuthenticationError",
    "MailConnectionError",
    "MailProtocolError",
    "MailSession",
    "MessageNormalizer",
    "MessageParseError",
    "NoiseConfig",
    "NoiseFilter",
    "PassResult",
    "PassState",
    "PersistenceError",
    "PollOrchestrator",
    "PollerConfig",
    "PollerService",
    "QueueConfig",
    "RetryConfig",
    "SessionConfig",
    "SessionParams",
    "ThreadLinker",
    "ThreadingError",
    "VaultConfig",
    "WorkQueue",
    "aggregate_watchers",
    "compute_dedupe_key",
    "create_health_app",
    "install_signal_handlers",
    "merge_into_bcc",
    "setup_logging",
    "with_retry",
]
