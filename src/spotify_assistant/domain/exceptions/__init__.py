"""Domain exceptions."""

from typing import Any


class DomainException(Exception):
    """Base exception for all domain exceptions."""

    # Hey future me, message is stored as an attribute so callers can inspect it without
    # parsing str(exception). Never raise this directly - use a specific subclass so
    # callers can catch precisely.
    def __init__(self, message: str, *args: Any) -> None:
        super().__init__(message, *args)
        self.message = message


class EntityNotFoundException(DomainException):
    """Raised when an entity is not found."""

    # entity_type/entity_id are kept separately so error handlers can log them structured.
    # Repositories raise this from get() and delete() - a delete of an unknown id is
    # NEVER a silent success.
    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} with id {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ValidationException(DomainException):
    """Raised when entity or query validation fails.

    Used to signal that an entity's invariants have been violated or that a
    query references fields the entity does not allow filtering on.
    """

    pass


class BusinessRuleViolation(DomainException):
    """A business rule was violated.

    Example:
        raise BusinessRuleViolation("Cannot compare a playlist with itself")
    """

    pass


class ReferentialIntegrityError(BusinessRuleViolation):
    """A write would leave a Playlist pointing at Tracks the backend does not hold.

    Raised both when a Playlist references unknown Tracks and when deleting a
    Track that is still referenced by at least one Playlist. The policy is
    reject, never cascade.
    """

    def __init__(
        self,
        message: str,
        entity_type: str,
        entity_id: Any,
        references: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.references = references or []


class ConflictError(DomainException):
    """Concurrent mutation detected by optimistic concurrency control.

    Raised when the stored version of an entity no longer matches the version
    the caller read. Recoverable: re-read, re-apply, retry.
    """

    def __init__(
        self,
        entity_type: str,
        entity_id: Any,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        if expected_version is None:
            detail = "was modified concurrently"
        elif actual_version is None:
            detail = f"expected version {expected_version} but it no longer exists"
        else:
            detail = (
                f"expected version {expected_version} but found {actual_version}"
            )
        super().__init__(f"{entity_type} with id {entity_id} {detail}")
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class BackendUnavailableError(DomainException):
    """Storage backend could not be reached or did not answer in time.

    Wraps driver connection failures and operation timeouts. Transient by
    default: callers may retry with backoff (see execute_with_retry).
    """

    def __init__(self, backend: str, message: str, retryable: bool = True) -> None:
        super().__init__(f"[{backend}] {message}")
        self.backend = backend
        self.retryable = retryable


class CapabilityUnsupportedError(DomainException):
    """The active backend cannot fulfil the requested operation.

    Example: a range query against the key-value cache backend, which only
    supports id lookups.
    """

    def __init__(self, backend: str, capability: str, detail: str | None = None) -> None:
        message = f"Backend '{backend}' does not support {capability}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.backend = backend
        self.capability = capability


class ConfigurationError(DomainException):
    """Application misconfiguration.

    Raised at startup when the selected backend is missing required
    configuration. Fatal - the process must not continue with a
    partially-initialized adapter.

    Example:
        raise ConfigurationError("POSTGRES_URL is required for the postgres backend")
    """

    pass


__all__ = [
    "DomainException",
    "EntityNotFoundException",
    "ValidationException",
    "BusinessRuleViolation",
    "ReferentialIntegrityError",
    "ConflictError",
    "BackendUnavailableError",
    "CapabilityUnsupportedError",
    "ConfigurationError",
]
