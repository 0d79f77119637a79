"""
Elyments error types.

Every failure raised by this package derives from ElymentsError and carries a
stable ``code`` alongside the human readable message.
"""

from typing import Any, Optional


class ElymentsError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.details = details


class AuthError(ElymentsError):
    def __init__(self, message: str, code: str = "auth_error", details: Optional[dict[str, Any]] = None):
        super().__init__(code, message, details)


class NotLoggedIn(AuthError):
    def __init__(self, message: str = "Not logged in"):
        super().__init__(message, code="not_logged_in")


class NoRefreshToken(AuthError):
    def __init__(self, message: str = "No refresh token available"):
        super().__init__(message, code="no_refresh_token")


class SessionExpired(AuthError):
    """The refresh token itself was rejected; a new OTP login is required."""

    def __init__(self, message: str = "Session expired, please login again"):
        super().__init__(message, code="session_expired")


class RefreshFailed(AuthError):
    def __init__(self, detail: str):
        super().__init__(f"Token refresh failed: {detail}", code="refresh_failed", details={"detail": detail})
        self.detail = detail


class MalformedSessionResponse(AuthError):
    def __init__(self, message: str = "Could not extract session from response", details: Optional[dict[str, Any]] = None):
        super().__init__(message, code="malformed_session_response", details=details)


class OtpError(AuthError):
    def __init__(self, message: str):
        super().__init__(message, code="otp_failed")


class HttpError(ElymentsError):
    def __init__(self, status_code: int, message: str):
        super().__init__("http_error", message, {"status_code": status_code})
        self.status_code = status_code


class NotConnected(ElymentsError):
    def __init__(self, message: str = "Not connected to Elyments"):
        super().__init__("not_connected", message)


class TransportError(ElymentsError):
    def __init__(self, message: str, code: str = "transport_error"):
        super().__init__(code, message)
