"""Authentication flow exceptions.

Every failure carries a stable ``reason`` the mobile client maps to UI copy,
plus optional routing data (username/email) so the client can jump straight to
a pre-filled password login.
"""

from typing import Any

from fastapi import HTTPException, status


class AuthFlowException(HTTPException):
    """Base authentication flow exception."""

    reason: str = "authentication_failed"

    def __init__(
        self,
        detail: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.data = data or {}

    def to_content(self) -> dict[str, Any]:
        """JSON body rendered by the application exception handler."""
        content: dict[str, Any] = {"success": False, "reason": self.reason, "message": self.detail}
        if self.data:
            content["data"] = self.data
        return content


class UnauthorizedFlowException(AuthFlowException):
    """401 variant carrying the bearer challenge header."""

    def __init__(self, detail: str, data: dict[str, Any] | None = None):
        super().__init__(
            detail=detail,
            status_code=status.HTTP_401_UNAUTHORIZED,
            data=data,
            headers={"WWW-Authenticate": "Bearer"},
        )


def _identity_data(username: str | None, email: str | None) -> dict[str, Any]:
    return {"username": username, "email": email}


# Registration flow


class InvalidPayload(AuthFlowException):
    """Raised when the scanned QR payload cannot be decoded."""

    reason = "invalid_payload"

    def __init__(self, detail: str = "Invalid QR code format"):
        super().__init__(detail=detail)


class IdentityUnavailable(AuthFlowException):
    """Raised when the legacy ERP cannot be reached in time."""

    reason = "identity_unavailable"

    def __init__(self):
        super().__init__(
            detail="Identity service is temporarily unavailable, please try again",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


class InvalidOrExpiredToken(UnauthorizedFlowException):
    """Raised when the legacy ERP rejects the QR token."""

    reason = "invalid_or_expired_token"

    def __init__(self, detail: str = "Invalid or expired QR code"):
        super().__init__(detail=detail)


class AlreadyRegistered(AuthFlowException):
    """Raised when a QR scan targets an identity whose account is still claimed."""

    reason = "already_registered"

    def __init__(self, username: str | None, email: str | None):
        super().__init__(
            detail="User already registered. Please use login instead.",
            status_code=status.HTTP_409_CONFLICT,
            data=_identity_data(username, email),
        )

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        content["alreadyRegistered"] = True
        return content


class InvalidOrExpiredCode(AuthFlowException):
    """Raised when no unused, unexpired code matches."""

    reason = "invalid_or_expired_code"

    def __init__(self):
        super().__init__(detail="Invalid or expired verification code")


class TooManyAttempts(AuthFlowException):
    """Raised when a matching code has exhausted its attempts."""

    reason = "too_many_attempts"

    def __init__(self):
        super().__init__(
            detail="Maximum verification attempts exceeded. Please scan the QR code again.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        )


class SessionExpired(AuthFlowException):
    """Raised when the registration session is missing, used or expired."""

    reason = "session_expired"

    def __init__(self):
        super().__init__(detail="Registration session expired. Please scan the QR code again.")


class EmailNotVerified(AuthFlowException):
    """Raised when password setup is attempted before the emailed code was verified."""

    reason = "email_not_verified"

    def __init__(self):
        super().__init__(
            detail="Email not verified. Please enter the code sent to your email first.",
            status_code=status.HTTP_403_FORBIDDEN,
        )


class PasswordMismatch(AuthFlowException):
    """Raised when the new password and its confirmation differ."""

    reason = "password_mismatch"

    def __init__(self):
        super().__init__(detail="Passwords do not match")


# Login flow


class InvalidCredentials(UnauthorizedFlowException):
    """Raised for unknown usernames and wrong passwords alike."""

    reason = "invalid_credentials"

    def __init__(self):
        super().__init__(detail="Invalid credentials")


class AccountNotFound(UnauthorizedFlowException):
    """Raised by quick login for unknown accounts: the client must re-register via QR."""

    reason = "account_not_found"

    def __init__(self):
        super().__init__(detail="Account not found. Please register by scanning a QR code.")


class AccountInactive(UnauthorizedFlowException):
    """Raised when the account is deactivated or not registered."""

    reason = "account_inactive"

    def __init__(self, username: str | None = None, email: str | None = None):
        super().__init__(detail="Account is inactive or not registered", data=_identity_data(username, email))


class SessionExpiredAfterLogout(UnauthorizedFlowException):
    """Raised by quick login after logout: password login is required."""

    reason = "session_expired_after_logout"

    def __init__(self, username: str | None, email: str | None):
        super().__init__(
            detail="Session ended by logout. Please login with your password.",
            data=_identity_data(username, email),
        )


class NoActiveSession(UnauthorizedFlowException):
    """Raised by quick login when no quick-login session qualifies."""

    reason = "no_active_session"

    def __init__(self, username: str | None, email: str | None):
        super().__init__(
            detail="Quick login not available. Please login with your password.",
            data=_identity_data(username, email),
        )


class ReauthRequired(UnauthorizedFlowException):
    """Raised by quick login when the last password login is too old."""

    reason = "reauth_required"

    def __init__(self, username: str | None, email: str | None):
        super().__init__(
            detail="Re-authentication required - please login with password",
            data=_identity_data(username, email),
        )


# Tokens


class InvalidRefreshToken(UnauthorizedFlowException):
    """Raised when a refresh token is unknown, rotated, revoked or expired."""

    reason = "invalid_refresh_token"

    def __init__(self):
        super().__init__(detail="Invalid refresh token")


class Unauthenticated(UnauthorizedFlowException):
    """Raised when an access token does not resolve to a live session."""

    reason = "unauthenticated"

    def __init__(self, detail: str = "Session expired or user inactive"):
        super().__init__(detail=detail)
