from __future__ import annotations


class ReconcileError(Exception):
    """Base class for everything a reconciliation pass can raise on purpose."""

    reason = "ReconcileError"


class ValidationError(ReconcileError):
    """The requester's spec cannot be acted on until they fix it."""

    reason = "InvalidSpec"

    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class TransientDriverError(ReconcileError):
    """Talking to the workload driver (or store) failed; retry with backoff."""

    def __init__(self, message: str, reason: str = "DriverUnavailable"):
        super().__init__(message)
        self.reason = reason


class ConflictError(ReconcileError):
    """The stored object changed since it was read."""

    reason = "Conflict"


class NotFoundError(ReconcileError):
    reason = "NotFound"
