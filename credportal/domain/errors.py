"""Typed errors for the credentialing workflow.

Every error carries a machine-readable ``code`` and the HTTP status the
handlers answer with, so callers catch by type instead of parsing messages.

    CredentialingError
    +-- InvalidTransitionError     illegal edge requested
    +-- InvalidStateError          precondition on the current status not met
    +-- AlreadySupersededError     duplicate regeneration
    +-- NotAuthorizedError         caller lacks the required role
    +-- ValidationFailedError      malformed payload
    +-- NotFoundError              entity does not exist
    +-- ProviderUnavailableError   external API or network failure
    +-- RepositoryError            remote store failure
"""

from __future__ import annotations

from typing import Any


class CredentialingError(Exception):
    code: str = "CREDENTIALING_ERROR"
    http_status: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidTransitionError(CredentialingError):
    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition {current} -> {target}")


class InvalidStateError(CredentialingError):
    code = "INVALID_STATE"
    http_status = 409


class AlreadySupersededError(CredentialingError):
    code = "ALREADY_SUPERSEDED"
    http_status = 409

    def __init__(self, contract_id: str, superseded_by: str | None = None) -> None:
        self.contract_id = contract_id
        self.superseded_by = superseded_by
        super().__init__(f"Contract {contract_id} was already superseded")


class NotAuthorizedError(CredentialingError):
    code = "NOT_AUTHORIZED"
    http_status = 403


class ValidationFailedError(CredentialingError):
    code = "VALIDATION_FAILED"
    http_status = 400


class NotFoundError(CredentialingError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class ProviderUnavailableError(CredentialingError):
    code = "PROVIDER_UNAVAILABLE"
    http_status = 503


class RepositoryError(CredentialingError):
    code = "REPOSITORY_ERROR"
    http_status = 500


class TransientProviderError(Exception):
    """Retryable external failure: timeout, connection error, 429 or 5xx."""


class PermanentProviderError(Exception):
    """Non-retryable external rejection (4xx other than 429)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
