"""Error taxonomy shared by the auth service, storage backends and HTTP layer."""

from typing import Dict, List, Optional


class AuthServiceError(Exception):
    """Base class for errors raised by account and session operations."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(AuthServiceError):
    """Raised when input is malformed. Carries field-level messages."""

    def __init__(self, message: str, errors: Optional[Dict[str, List[str]]] = None) -> None:
        self.errors = errors or {}
        super().__init__(message)


class ConflictError(AuthServiceError):
    """Raised when an email, username or provider identity is already taken."""


class BadRequestError(AuthServiceError):
    """Raised when an operation does not apply to the account's current state."""


class NotFoundError(AuthServiceError):
    """Raised when a caller-owned resource does not exist."""


class InvalidCredentialsError(AuthServiceError):
    """Raised for an unknown email or a wrong password. Never says which."""

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class UnverifiedError(AuthServiceError):
    def __init__(self, message: str = "Please verify your email before logging in") -> None:
        super().__init__(message)


class UnauthorizedError(AuthServiceError):
    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class ForbiddenError(AuthServiceError):
    """Raised when a partially authenticated principal hits a full-auth endpoint."""

    def __init__(self, message: str = "Two-factor authentication required") -> None:
        super().__init__(message)


class InvalidTokenError(AuthServiceError):
    """Raised for unknown, consumed or expired verification and reset tokens."""


class InvalidCodeError(AuthServiceError):
    def __init__(self, message: str = "Invalid verification code") -> None:
        super().__init__(message)


class DeliveryError(Exception):
    """Raised by email senders when a message could not be handed off."""


class StorageError(Exception):
    """Infrastructure failure in a storage backend. Not user-actionable."""


class RecordNotFoundError(StorageError):
    """Raised when a write targets a record that does not exist."""

    def __init__(self, entity: str, record_id: int) -> None:
        self.entity = entity
        self.record_id = record_id
        super().__init__(f"{entity} with id {record_id} not found")


class ConstraintViolationError(StorageError):
    """Raised when a write would break a uniqueness constraint."""

    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Unique constraint violated on {field}")


class StorageUnavailableError(StorageError):
    """Raised when the backing store cannot be reached."""
