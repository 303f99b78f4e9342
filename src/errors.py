class ValidationError(ValueError):
    """Caller-visible input problem. Nothing has been written when this is raised."""


class LedgerConflictError(RuntimeError):
    """The guarded read-modify-write kept conflicting after all retries."""


class MissingAggregateError(RuntimeError):
    """A reversal or repair was attempted on a user with no finance aggregate."""


class TransactionNotFoundError(LookupError):
    pass


class DuplicateTransactionError(ValidationError):
    pass
