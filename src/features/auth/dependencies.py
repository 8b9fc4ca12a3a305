"""Authentication dependencies for FastAPI."""

from uuid import UUID

from fastapi import BackgroundTasks, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.dependencies import get_db_session
from src.features.identity.gateway import HttpLegacyIdentityGateway, LegacyIdentityGateway
from src.shared.clock import Clock, utcnow
from src.shared.notifications.email import EmailNotifier, Notifier

from .exceptions import Unauthenticated
from .jwt_utils import InvalidTokenError, decode_token, verify_token_type
from .service import AuthService
from .tokens import Principal, TokenService

security = HTTPBearer(auto_error=False)

_gateway: HttpLegacyIdentityGateway | None = None


def get_identity_gateway() -> LegacyIdentityGateway:
    """Shared legacy ERP client, created on first use."""
    global _gateway
    if _gateway is None:
        _gateway = HttpLegacyIdentityGateway()
    return _gateway


async def close_identity_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None


def get_notifier() -> Notifier:
    return EmailNotifier()


def get_clock() -> Clock:
    return utcnow


def get_auth_service(
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_db_session),
    gateway: LegacyIdentityGateway = Depends(get_identity_gateway),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
) -> AuthService:
    """Request-scoped orchestrator; verification emails go out after the response."""
    return AuthService(session, gateway, notifier, clock, background=background_tasks)


def _bearer_token(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Not authenticated")
    return credentials.credentials


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
) -> Principal:
    """Resolve the bearer token to a live session.

    Raises:
        Unauthenticated: If the token is missing, invalid, replaced or its session is gone

    """
    return await TokenService.validate_access_token(session, _bearer_token(credentials), clock())


async def get_logout_subject(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    clock: Clock = Depends(get_clock),
) -> UUID:
    """Account id of a signed, unexpired access token, live session or not.

    Logout accepts tokens whose session it already revoked, so a repeated
    logout succeeds instead of failing authentication.
    """
    try:
        payload = decode_token(_bearer_token(credentials), clock())
        if not verify_token_type(payload, "access"):
            raise Unauthenticated("Invalid token type")
        return UUID(str(payload["sub"]))
    except (InvalidTokenError, ValueError) as err:
        raise Unauthenticated("Invalid or expired token") from err
