class LendingError(Exception):
    """Base class for failures surfaced to callers of the lending operations."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(LendingError):
    """A referenced book, or an active borrow record for it, does not exist."""


class RejectedError(LendingError):
    """A business rule refused the operation (no copies left, active borrows, ...)."""


class ConflictError(LendingError):
    """A uniqueness rule was violated, e.g. a duplicate ISBN."""
