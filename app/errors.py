from __future__ import annotations


class RotaError(Exception):
    """Base class for failures raised by the rota engine."""


class ValidationError(RotaError, ValueError):
    """Raised when a request is rejected before any transaction opens."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class UnknownPersonError(ValidationError):
    """Raised when an operation names a person that is not on the roster."""

    def __init__(self, person_id: int) -> None:
        super().__init__(f"Person {person_id} is not on the roster.", field="person_id")
        self.person_id = person_id


class ConflictError(RotaError):
    """A unique slot key was claimed by a concurrent generation pass."""


class StorageError(RotaError):
    """The datastore transaction failed and was rolled back."""

    retryable = True
