"""Authentication error taxonomy shared by the server and the client core."""

from enum import Enum


class ErrorKind(str, Enum):
    MISSING_HASH = "missing_hash"
    SIGNATURE_INVALID = "signature_invalid"
    STALE_PAYLOAD = "stale_payload"
    REPLAYED = "replayed"
    MALFORMED_USER = "malformed_user"
    MISSING_ENVIRONMENT = "missing_environment"
    MISSING_PAYLOAD = "missing_payload"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    SESSION_EXPIRED = "session_expired"


# Shown to the user for every failure; the kind is exposed separately.
USER_FACING_ERROR = "Authentication failed. Please reopen the app from Telegram."


def is_retryable(kind: ErrorKind) -> bool:
    """Only transient I/O failures are worth another attempt."""
    return kind is ErrorKind.UPSTREAM_ERROR


def parse_error_kind(raw: str | None) -> ErrorKind | None:
    """Map a wire reason code back to an ErrorKind, or None if unknown."""
    try:
        return ErrorKind(raw)
    except ValueError:
        return None


class AuthError(Exception):
    """Raised by client-side I/O when a session cannot be obtained.

    The message is always the coarse reason code, never payload contents.
    """

    def __init__(self, kind: ErrorKind):
        super().__init__(kind.value)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return is_retryable(self.kind)
