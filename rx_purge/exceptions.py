"""Exceptions for history purge operations."""

from typing import Optional


class PurgeError(Exception):
    """Base exception for history purge operations."""

    code = 50000

    def __init__(self, message: str, code: Optional[int] = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)


class InvalidParameterError(PurgeError):
    """Raised before any deletion when the invocation parameters are unusable."""

    code = 51000

    GENERIC = 51000
    INVERTED_WINDOW = 51001
    CHUNK_DAYS = 51002
    PARTIAL_WINDOW = 51004


class SafetyCapExceededError(PurgeError):
    """Raised when the chunk driver's per-chunk iteration guard trips."""

    code = 51003

    def __init__(self, chunk_from: object, chunk_to: object, max_execs: int):
        self.chunk_from = chunk_from
        self.chunk_to = chunk_to
        self.max_execs = max_execs
        super().__init__(
            f"max_execs_per_chunk ({max_execs}) exceeded for chunk "
            f"[{chunk_from}, {chunk_to}). Possible hot range or predicate mismatch."
        )


class DeleteFailureError(PurgeError):
    """Raised when a single delete step fails and the pass must abort."""

    code = 51010

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"Delete step '{step}' failed: {cause}")


class PurgeDisabledError(PurgeError):
    """Raised when the purge is invoked while disabled by configuration."""

    code = 51020

    def __init__(self) -> None:
        super().__init__("History purge is disabled by configuration")
