from typing import Optional


class RoyaltyEngineError(Exception):
    """Base error. Carries the statement, line item and violated invariant when known."""

    def __init__(
        self,
        message: str,
        *,
        statement_id: Optional[str] = None,
        line_item_id: Optional[str] = None,
        invariant: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.statement_id = statement_id
        self.line_item_id = line_item_id
        self.invariant = invariant

    def with_context(self, statement_id: Optional[str] = None, line_item_id: Optional[str] = None):
        if self.statement_id is None:
            self.statement_id = statement_id
        if self.line_item_id is None:
            self.line_item_id = line_item_id
        return self

    def __str__(self) -> str:
        parts = []
        if self.statement_id:
            parts.append(f"statement {self.statement_id}")
        if self.line_item_id:
            parts.append(f"line item {self.line_item_id}")
        prefix = ", ".join(parts)
        text = f"{prefix}: {self.message}" if prefix else self.message
        if self.invariant:
            text = f"{text} [{self.invariant}]"
        return text


class StatementValidationError(RoyaltyEngineError):
    """The statement cannot be processed as submitted; nothing is committed."""


class SplitConfigurationError(StatementValidationError):
    pass


class RateUnavailable(StatementValidationError):
    pass


class RateFetchError(RoyaltyEngineError):
    """Transient failure of the rates collaborator. Retried by the normalizer."""


class RecoupmentInvariantError(RoyaltyEngineError):
    """Withholding outside [0, min(balance, remaining)]. Aborts the run."""


class IdempotencyConflictError(RoyaltyEngineError):
    pass


class InvalidStateTransitionError(RoyaltyEngineError):
    pass


class NotFoundError(RoyaltyEngineError):
    pass


class ProcessingCancelled(RoyaltyEngineError):
    pass
