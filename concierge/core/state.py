# concierge/core/state.py

from enum import Enum


class TurnState(str, Enum):
    """How a turn ended."""
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"
