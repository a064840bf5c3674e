"""
Error taxonomy for the reconciliation core.

Every error carries a human-readable message and an optional ``details`` dict
that the HTTP layer forwards to the caller.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidScopeError(ReconciliationError):
    """Records from more than one (terminal, period) were given to the matcher."""


class ValidationError(ReconciliationError):
    """Invalid resolution or configuration input. ``field`` names the culprit."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.field = field


class ConflictError(ReconciliationError):
    """Divergence already resolved, or a run already in flight for the scope."""


class PersistenceError(ReconciliationError):
    """Storage failure during an atomic commit. Nothing was written."""


class NotFoundError(ReconciliationError):
    """Unknown divergence, run or terminal id."""
