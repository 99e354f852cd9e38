from .engine import Database, make_engine, make_session_factory
from .models import Base
from .registry import AccountRegistry
from .store import EnqueueLedger, MessageStore, ThreadStore

__all__ = [
    "AccountRegistry",
    "Base",
    "Database",
    "EnqueueLedger",
    "MessageStore",
    "ThreadStore",
    "make_engine",
    "make_session_factory",
]
