from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    TRANSLATION = "translation"
    CREDENTIAL = "credential"
    UPSTREAM_TRANSIENT = "upstream_transient"
    CREDENTIALS_EXHAUSTED = "credentials_exhausted"
    NO_CANDIDATE = "no_candidate"


class RelayError(Exception):
    """Base class for every failure the relay reports to a client."""

    kind: ErrorKind = ErrorKind.UPSTREAM_TRANSIENT
    error_type: str = "api_error"
    default_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details

    @property
    def http_status(self) -> int:
        return self.status_code or self.default_status

    def to_body(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "message": self.message,
            "type": self.error_type,
            "code": self.http_status,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class RequestValidationError(RelayError):
    kind = ErrorKind.VALIDATION
    error_type = "invalid_request_error"
    default_status = 400


class TranslationError(RelayError):
    kind = ErrorKind.TRANSLATION
    error_type = "invalid_request_error"
    default_status = 400


class CredentialError(RelayError):
    """Upstream rejected the credential itself (auth failure or quota)."""

    kind = ErrorKind.CREDENTIAL
    error_type = "api_error"
    default_status = 401

    def __init__(
        self,
        message: str,
        *,
        credential: str | None = None,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, status_code=status_code, details=details)
        self.credential = credential


class UpstreamTransientError(RelayError):
    kind = ErrorKind.UPSTREAM_TRANSIENT
    error_type = "api_error"
    default_status = 502


class AllCredentialsExhaustedError(RelayError):
    kind = ErrorKind.CREDENTIALS_EXHAUSTED
    error_type = "credentials_exhausted"
    default_status = 503


class NoResponseCandidateError(RelayError):
    kind = ErrorKind.NO_CANDIDATE
    error_type = "api_error"
    default_status = 502


class CredentialFileError(FileNotFoundError):
    """Raised when no usable credential can be loaded at startup or reload."""
