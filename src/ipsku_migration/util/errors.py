from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    PROVIDER_ERROR = 4
    RUNTIME_ERROR = 5
    RECORD_FAILURES = 6
    ABORTED = 7
    CANCELLED = 130


class MigrationError(Exception):
    """Base error for the migration pipeline."""


class ConfigurationError(MigrationError):
    """Raised for configuration or argument issues. Nothing has been mutated yet."""


class NoSubscriptionsAvailable(ConfigurationError):
    """Raised when subscription filtering leaves nothing to process."""


class AuthenticationError(MigrationError):
    """Raised when credentials cannot be resolved or are rejected."""


class ProviderError(MigrationError):
    """Raised when a cloud control-plane call fails."""


class ProviderTransientError(ProviderError):
    """Retryable by re-invoking the phase; the record keeps its prior phase."""


class ProviderPermanentError(ProviderError):
    """Per-record failure; the record is marked Failed."""


class ValidationFailure(MigrationError):
    """Replacement address did not pass validation. Non-fatal."""


class PreconditionNotMet(MigrationError):
    """A record (or batch) is not eligible for the requested transition."""


class CleanupNotConfirmed(PreconditionNotMet):
    """Cleanup was requested without the confirmation token."""


class InvalidTransition(MigrationError):
    """Raised when code attempts a phase transition the state machine forbids."""


class InventoryStoreError(MigrationError):
    """Raised when reading or writing inventory snapshots fails."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigurationError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthenticationError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, ProviderError):
        return int(ExitCode.PROVIDER_ERROR)
    if isinstance(exc, PreconditionNotMet):
        return int(ExitCode.ABORTED)
    if isinstance(exc, KeyboardInterrupt):
        return int(ExitCode.CANCELLED)
    if isinstance(exc, MigrationError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


# HTTP statuses worth retrying by re-running the phase.
TRANSIENT_STATUS_CODES = {408, 409, 429, 500, 502, 503, 504}


def is_azure_error(exc: BaseException) -> bool:
    """
    Return True if the exception looks like an Azure SDK error.
    """
    return exc.__class__.__module__.startswith("azure.")


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def is_not_found(exc: BaseException) -> bool:
    if exc.__class__.__name__ == "ResourceNotFoundError":
        return True
    return _status_code(exc) == 404


def map_provider_error(exc: BaseException, context: str) -> Optional[MigrationError]:
    """
    Classify Azure SDK errors into the migration taxonomy.
    Returns None for exceptions that do not come from the SDK.
    """
    if isinstance(exc, MigrationError):
        return exc
    if not is_azure_error(exc):
        return None
    name = exc.__class__.__name__
    message = f"{context}: {exc}"
    if name in {"ClientAuthenticationError", "CredentialUnavailableError"}:
        return AuthenticationError(message)
    if name in {"ServiceRequestError", "ServiceResponseError", "ServiceRequestTimeoutError"}:
        return ProviderTransientError(message)
    status = _status_code(exc)
    if status is not None and status in TRANSIENT_STATUS_CODES:
        return ProviderTransientError(message)
    return ProviderPermanentError(message)
