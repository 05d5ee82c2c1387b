"""Relational session store with retrying queries and encrypted payloads."""

from .crypto import EncryptedEnvelopeCodec, decrypt_data, encrypt_data
from .db import EngineQueryPool, QueryPool, QueryResult, RetryingQueryExecutor
from .errors import (
    CleanupSweepError,
    DecodeError,
    DecryptionError,
    EnvelopeError,
    MalformedEnvelope,
    PermanentBackendError,
    RetriesExhausted,
    SessionStoreError,
    TamperedSession,
    TransientBackendError,
)
from .settings import Settings, StoreOptions, load_settings
from .store import SessionBackend, SessionStore

__all__ = [
    "CleanupSweepError",
    "DecodeError",
    "DecryptionError",
    "EncryptedEnvelopeCodec",
    "EngineQueryPool",
    "EnvelopeError",
    "MalformedEnvelope",
    "PermanentBackendError",
    "QueryPool",
    "QueryResult",
    "RetriesExhausted",
    "RetryingQueryExecutor",
    "SessionBackend",
    "SessionStore",
    "SessionStoreError",
    "Settings",
    "StoreOptions",
    "TamperedSession",
    "TransientBackendError",
    "decrypt_data",
    "encrypt_data",
    "load_settings",
]
