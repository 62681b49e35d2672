"""Error taxonomy shared by the budget services and the HTTP layer.

Every error derives from ``ValueError`` so callers that only care about
"bad request" semantics can keep catching ``ValueError``.
"""

from typing import Optional


class BudgetEngineError(ValueError):
    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if not self.details:
            return self.message
        detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({detail_str})"


class ValidationError(BudgetEngineError):
    """Empty, negative or otherwise malformed input."""


class ConflictError(BudgetEngineError):
    """The request collides with existing state (duplicates, self-merge, ...)."""


class LockedStateError(BudgetEngineError):
    """A locked monthly budget was asked to change."""


class NotFoundError(BudgetEngineError):
    pass


class ConsistencyError(BudgetEngineError):
    """A multi-entity operation failed part way and was rolled back."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, details)
        self.original_error = original_error
