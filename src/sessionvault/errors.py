from __future__ import annotations


class SessionStoreError(Exception):
    """Base class for every error raised by the session store."""


class BackendError(SessionStoreError):
    """An error reported by the pooled query capability."""

    fatal = False


class TransientBackendError(BackendError):
    """Connection-level failure that is worth retrying."""

    fatal = True


class PermanentBackendError(BackendError):
    """SQL or application level failure; never retried."""


class RetriesExhausted(BackendError):
    """A fatal error persisted past the configured retry bound."""

    def __init__(self, message: str, *, last_error: BaseException, attempts: int):
        super().__init__(f"{message}: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class DecodeError(SessionStoreError):
    """A stored session payload is not valid JSON."""


class EnvelopeError(SessionStoreError):
    """The encrypted envelope around a session could not be opened."""


class DecryptionError(EnvelopeError):
    pass


class MalformedEnvelope(EnvelopeError):
    pass


class TamperedSession(EnvelopeError):
    pass


class CleanupSweepError(SessionStoreError):
    """Raised inside the background sweep; reported, never propagated."""


__all__ = [
    "SessionStoreError",
    "BackendError",
    "TransientBackendError",
    "PermanentBackendError",
    "RetriesExhausted",
    "DecodeError",
    "EnvelopeError",
    "DecryptionError",
    "MalformedEnvelope",
    "TamperedSession",
    "CleanupSweepError",
]
