from __future__ import annotations

from typing import Any, Dict, Optional


class CodePrepError(Exception):
    """Base class for every error raised by the client library.

    Attributes:
        code: short machine-readable identifier (e.g. ``"VALIDATION"``)
        message: human-readable message, safe to show in the UI
        details: extra debugging context
    """

    code = "CODEPREP"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")


class ConfigurationError(CodePrepError):
    code = "CONFIG"


class ValidationError(CodePrepError):
    """Local precondition failure. Raised before any network call is made."""

    code = "VALIDATION"


class AuthError(CodePrepError):
    """The backend rejected the bearer token (HTTP 401) or no identity is available."""

    code = "AUTH"


class TransientInfraError(CodePrepError):
    """Timeout, gateway failure (502/503/504) or no response at all."""

    code = "TRANSIENT"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message, details)
        self.status = status


class ServerRejectionError(CodePrepError):
    """The backend answered and refused the request. Never retried automatically."""

    code = "REJECTED"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        status: int,
    ) -> None:
        super().__init__(message, details)
        self.status = status


__all__ = [
    "AuthError",
    "CodePrepError",
    "ConfigurationError",
    "ServerRejectionError",
    "TransientInfraError",
    "ValidationError",
]
