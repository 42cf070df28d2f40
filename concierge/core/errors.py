# concierge/core/errors.py

from typing import Optional


class ConciergeError(RuntimeError):
    """Base class for errors raised by the concierge core."""


class UpstreamError(ConciergeError):
    """The LLM provider rejected a request (auth, bad request, malformed reply)."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class TransientUpstreamError(UpstreamError):
    """Timeouts, rate limits and 5xx responses that survived every retry."""


class ToolArgumentError(ConciergeError):
    """Raised by tool handlers when the model supplied unusable arguments."""


class ChunkNotFoundError(ConciergeError):
    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"Chunk not found in archive: {chunk_id}")
        self.chunk_id = chunk_id


class StorageCorruptionError(ConciergeError):
    """Archived content exists in the index but cannot be read back."""

    def __init__(self, message: str, chunk_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.chunk_id = chunk_id


class ArchivalError(ConciergeError):
    """An archival or consolidation pass did not complete; nothing was committed."""


class StartupRecoveryFailure(ConciergeError):
    """A pending chunk could not be summarized during start-up recovery."""

    def __init__(self, chunk_id: str, attempts: int) -> None:
        super().__init__(f"Pending chunk {chunk_id} could not be summarized after {attempts} attempt(s)")
        self.chunk_id = chunk_id
        self.attempts = attempts
