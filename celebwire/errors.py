"""Error taxonomy shared by the ingestion pipeline."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification attached to stage results and audit records."""

    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIAL = "invalid_credential"
    NETWORK = "network_error"
    EXTERNAL_SERVICE = "external_service_error"
    NO_CREDENTIALS = "no_credentials"
    ALL_RATE_LIMITED = "all_rate_limited"
    STORE_WRITE = "store_write_error"
    INTERNAL = "internal_error"


class PipelineError(Exception):
    """Base class for every error raised by celebwire."""

    kind: ErrorKind = ErrorKind.INTERNAL


class NoCredentialsConfigured(PipelineError):
    """Raised at startup when the credential list is empty."""

    kind = ErrorKind.NO_CREDENTIALS

    def __init__(self, message: str = "No API credentials configured") -> None:
        super().__init__(message)


class CredentialsRejected(PipelineError):
    """No credential passed validation and at least one was not merely rate limited."""

    kind = ErrorKind.INVALID_CREDENTIAL

    def __init__(self, failures: dict[str, str]) -> None:
        self.failures = failures
        detail = ", ".join(f"{key_id}={outcome}" for key_id, outcome in failures.items())
        super().__init__(f"No valid API credentials found ({detail})")


class StoreWriteError(PipelineError):
    kind = ErrorKind.STORE_WRITE


class ValidationError(PipelineError, ValueError):
    """Malformed caller input; rejected before reaching the pipeline."""


__all__ = [
    "CredentialsRejected",
    "ErrorKind",
    "NoCredentialsConfigured",
    "PipelineError",
    "StoreWriteError",
    "ValidationError",
]
