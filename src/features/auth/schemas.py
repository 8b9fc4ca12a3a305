"""Authentication schemas (DTOs)."""

from datetime import datetime
from enum import StrEnum
from uuid import UUID

from pydantic import EmailStr, Field, field_validator

from src.features.account.schemas import RegisteredAccount
from src.features.device.schemas import DeviceInfo
from src.shared.schemas import CamelModel, SideEffectResult
from src.shared.validators.password import validate_password_strength


class NextStep(StrEnum):
    """Screen the client should show after a registration step."""

    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_VERIFICATION = "password_verification"
    SET_MOBILE_PASSWORD = "set_mobile_password"
    LOGIN = "login"


class RecoveryAction(StrEnum):
    QR_REGISTRATION_REQUIRED = "qr_registration_required"
    RETRY_QUICK_LOGIN = "retry_quick_login"
    PASSWORD_LOGIN_REQUIRED = "password_login_required"


class _EmailRequest(CamelModel):
    email: EmailStr = Field(..., description="Email address (validated via email-validator)")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


# Request schemas
class ScanEntryRequest(CamelModel):
    """Raw QR payload: JSON or base64-encoded JSON."""

    qr_data: str = Field(..., min_length=1)


class VerifyCodeRequest(_EmailRequest):
    verification_code: str = Field(..., pattern=r"^\d{6}$", description="6-digit code sent by email")


class ResendCodeRequest(_EmailRequest):
    pass


class VerifyLegacyPasswordRequest(_EmailRequest):
    password: str = Field(..., min_length=1)


class CompleteRegistrationRequest(_EmailRequest):
    """Mobile password setup.

    The confirmation is compared by the service so a mismatch surfaces as the
    ``password_mismatch`` reason rather than a generic validation error.
    """

    new_password: str = Field(
        ..., description="Password (minimum 8 characters, must include uppercase, lowercase, and digit)"
    )
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def check_password_strength(cls, value: str) -> str:
        """Validate password strength using shared validator."""
        return validate_password_strength(value)


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1)
    device_info: DeviceInfo | None = None


class QuickLoginRequest(CamelModel):
    account_id: UUID
    device_info: DeviceInfo | None = None


class RefreshTokenRequest(CamelModel):
    """Refresh token request."""

    refresh_token: str


class RecoverSessionRequest(_EmailRequest):
    pass


# Response schemas
class IdentityEcho(CamelModel):
    email: str
    name: str
    username: str
    next_step: NextStep


class ScanEntryResponse(CamelModel):
    success: bool = True
    data: IdentityEcho
    notification: SideEffectResult


class NextStepData(CamelModel):
    next_step: NextStep


class NextStepResponse(CamelModel):
    success: bool = True
    data: NextStepData


class ResendCodeResponse(CamelModel):
    success: bool = True
    notification: SideEffectResult


class CompleteRegistrationResponse(CamelModel):
    success: bool = True
    data: RegisteredAccount


class VerifyLegacyPasswordResponse(CamelModel):
    success: bool = True
    next_step: NextStep = NextStep.SET_MOBILE_PASSWORD


class AccountUser(CamelModel):
    id: UUID
    username: str
    email: str
    name: str


class TokenPair(CamelModel):
    """JWT token pair."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class SessionDescriptor(CamelModel):
    session_id: str
    expires_at: datetime
    quick_login_enabled: bool
    quick_login_expires_at: datetime


class TokenBundle(CamelModel):
    """Login result: who, which tokens, which session."""

    user: AccountUser
    tokens: TokenPair
    session: SessionDescriptor
    device: SideEffectResult | None = None


class LogoutResponse(CamelModel):
    success: bool = True
    sessions_deactivated: int
    refresh_tokens_deactivated: int
    token_cleanup: SideEffectResult
    device_cleanup: SideEffectResult


class SavedAccountSummary(CamelModel):
    id: UUID
    username: str
    email: str
    name: str
    has_quick_access: bool
    last_login_at: datetime | None = None


class RecoverSessionResponse(CamelModel):
    success: bool = True
    action: RecoveryAction
    repaired: bool = False


class ProfileResponse(CamelModel):
    user_id: UUID
    username: str
    email: str
    name: str
    session_id: str


class AuditEventResponse(CamelModel):
    action: str
    timestamp: datetime
    device_id: str | None = None
    details: dict | None = None
