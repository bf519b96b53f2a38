"""
Board error taxonomy. Remote failures are converted to these at the gateway boundary.
"""

from typing import Optional


class BoardError(Exception):
    """Base exception for board operations."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class FetchFailure(BoardError):
    """Bulk fetch for a board failed. Surfaced as a retryable error, never retried automatically."""
    pass


class MutationFailure(BoardError):
    """Remote write was rejected. The optimistic change is rolled back."""
    pass


class SubscriptionFailure(BoardError):
    """Change feed channel failed or disconnected. Recovered by a full re-seed."""
    pass


class ActionNotPermitted(BoardError):
    """The actor's role does not allow the requested board action."""
    pass
