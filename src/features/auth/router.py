"""Authentication router (registration, login and session lifecycle endpoints)."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.device.schemas import DeviceInfo
from src.shared.audit.audit import list_audit_events
from src.shared.rate_limit import limiter

from .dependencies import get_auth_service, get_current_principal, get_logout_subject
from .schemas import (
    AuditEventResponse,
    CompleteRegistrationRequest,
    CompleteRegistrationResponse,
    LoginRequest,
    LogoutResponse,
    NextStepResponse,
    ProfileResponse,
    QuickLoginRequest,
    RecoverSessionRequest,
    RecoverSessionResponse,
    RefreshTokenRequest,
    ResendCodeRequest,
    ResendCodeResponse,
    SavedAccountSummary,
    ScanEntryRequest,
    ScanEntryResponse,
    TokenBundle,
    VerifyCodeRequest,
    VerifyLegacyPasswordRequest,
    VerifyLegacyPasswordResponse,
)
from .service import AuthService
from .tokens import Principal

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


def _with_client_address(device_info: DeviceInfo | None, request: Request) -> DeviceInfo | None:
    """Fill the device's IP address from the connection when the client did not report one."""
    if device_info is None or device_info.ip_address or request.client is None:
        return device_info
    return device_info.model_copy(update={"ip_address": request.client.host})


# Registration


@router.post("/scan-entry", response_model=ScanEntryResponse)
@limiter.limit(settings.registration_rate_limit)
async def scan_entry(
    request: Request,
    data: ScanEntryRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Start registration from a scanned QR code.

    - **qrData**: QR text, JSON or base64-encoded JSON

    Sends a 6-digit verification code to the identity's email.
    """
    result = await service.scan_entry(data.qr_data)
    await session.commit()
    return result


@router.post("/verify-code", response_model=NextStepResponse)
@limiter.limit(settings.registration_rate_limit)
async def verify_code(
    request: Request,
    data: VerifyCodeRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Verify the emailed code.

    - **email**: Email the code was sent to
    - **verificationCode**: 6-digit code
    """
    result = await service.verify_code(data.email, data.verification_code)
    await session.commit()
    return result


@router.post("/resend-code", response_model=ResendCodeResponse)
@limiter.limit(settings.registration_rate_limit)
async def resend_code(
    request: Request,
    data: ResendCodeRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    result = await service.resend_code(data.email)
    await session.commit()
    return result


@router.post("/verify-legacy-password", response_model=VerifyLegacyPasswordResponse)
@limiter.limit(settings.registration_rate_limit)
async def verify_legacy_password(
    request: Request,
    data: VerifyLegacyPasswordRequest,
    service: AuthService = Depends(get_auth_service),
):
    """Check the ERP password of the identity being registered."""
    return await service.verify_legacy_password(data.email, data.password)


@router.post(
    "/complete-registration",
    response_model=CompleteRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(settings.registration_rate_limit)
async def complete_registration(
    request: Request,
    data: CompleteRegistrationRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Set the mobile password and complete registration.

    - **newPassword**: Password (minimum 8 characters, must include uppercase, lowercase, and digit)
    - **confirmPassword**: Must equal newPassword
    """
    result = await service.complete_registration(data.email, data.new_password, data.confirm_password)
    await session.commit()
    return result


# Login


@router.post("/login", response_model=TokenBundle)
@limiter.limit(settings.login_rate_limit)
async def login(
    request: Request,
    data: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Login with username and password.

    Returns the account, an access/refresh token pair and the session descriptor.
    """
    bundle = await service.login(data.username, data.password, _with_client_address(data.device_info, request))
    await session.commit()
    return bundle


@router.post("/quick-login", response_model=TokenBundle)
@limiter.limit(settings.login_rate_limit)
async def quick_login(
    request: Request,
    data: QuickLoginRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Passwordless login for a saved account.

    A 401 carries a ``reason`` telling the client whether to ask for the
    password (``reauth_required``, ``session_expired_after_logout``,
    ``no_active_session``) or to start over with a QR scan
    (``account_not_found``).
    """
    bundle = await service.quick_login(data.account_id, _with_client_address(data.device_info, request))
    await session.commit()
    return bundle


@router.post("/refresh", response_model=TokenBundle)
async def refresh_token(
    data: RefreshTokenRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Rotate the refresh token and get a new token pair for the same session."""
    bundle = await service.refresh(data.refresh_token)
    await session.commit()
    return bundle


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    account_id: UUID = Depends(get_logout_subject),
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    """Logout everywhere.

    Revokes every session and refresh token of the account and removes it
    from all devices. Calling it again succeeds.
    """
    result = await service.logout(account_id)
    await session.commit()
    return result


# Account switching and recovery


@router.get("/saved-accounts", response_model=list[SavedAccountSummary])
async def saved_accounts(
    device_id: str = Query(..., alias="deviceId", min_length=1),
    service: AuthService = Depends(get_auth_service),
):
    """Accounts saved on a device, most recently used first."""
    return await service.list_saved_accounts(device_id)


@router.post("/recover-session", response_model=RecoverSessionResponse)
async def recover_session(
    data: RecoverSessionRequest,
    service: AuthService = Depends(get_auth_service),
    session: AsyncSession = Depends(get_db_session),
):
    result = await service.recover_session(data.email)
    await session.commit()
    return result


# Current session


@router.get("/profile", response_model=ProfileResponse)
async def profile(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
):
    await session.commit()
    return ProfileResponse(
        user_id=principal.account_id,
        username=principal.username,
        email=principal.email,
        name=principal.name,
        session_id=principal.session_id,
    )


@router.get("/activity", response_model=list[AuditEventResponse])
async def activity(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
):
    """Recent authentication events of the current account."""
    events = await list_audit_events(session, principal.account_id, limit=limit)
    await session.commit()
    return [AuditEventResponse.model_validate(event) for event in events]


@router.get("/health")
async def health():
    return {"status": "healthy", "service": "auth"}
