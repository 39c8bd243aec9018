from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for session-engine exceptions.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code`` so web integrations can map failures without inspecting
    messages:
    - claims_verification (401)
    - unauthorized (401)
    """

    status_code: int = 401
    error_code: str = "unauthorized"
    default_message: str = "session error"

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ClaimsVerification(SessionError):
    """Token signature, issuer or expiration failed verification (401)."""
    error_code = "claims_verification"
    default_message = "token claims could not be verified"


class Unauthorized(SessionError):
    """The caller may not proceed (401)."""
    error_code = "unauthorized"
    default_message = "unauthorized"


class RefreshTokenNotFound(Unauthorized):
    default_message = "refresh token not found"


class AccessTokenNotFound(Unauthorized):
    default_message = "access token not found"


class ReplayDetected(Unauthorized):
    """Presented access token is no longer the one bound to its refresh token."""
    default_message = "access token is not bound to the refresh token"


class RefreshDenied(Unauthorized):
    """Early refresh of a still-valid access token was not confirmed."""
    default_message = "access token has not expired yet"


class InvalidPayload(Unauthorized):
    default_message = "access payload is missing required claims"


class RefreshByAccessDisabled(Unauthorized):
    default_message = "refresh by access payload is not enabled for this session"


__all__ = [
    "SessionError",
    "ClaimsVerification",
    "Unauthorized",
    "RefreshTokenNotFound",
    "AccessTokenNotFound",
    "ReplayDetected",
    "RefreshDenied",
    "InvalidPayload",
    "RefreshByAccessDisabled",
]
