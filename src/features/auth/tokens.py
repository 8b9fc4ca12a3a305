"""Session and token manager."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.account.models import Account
from src.features.account.service import AccountService
from src.features.device.schemas import DeviceInfo

from .exceptions import InvalidRefreshToken, Unauthenticated
from .jwt_utils import InvalidTokenError, create_access_token, create_refresh_token, decode_token, verify_token_type
from .models import RefreshToken, UserSession
from .schemas import AccountUser, SessionDescriptor, TokenBundle, TokenPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller resolved from an access token."""

    account_id: UUID
    username: str
    email: str
    name: str
    session_id: str


class TokenService:
    """Issues, rotates and validates tokens bound to per-device sessions."""

    @staticmethod
    async def get_session(session: AsyncSession, session_id: str) -> UserSession | None:
        stmt = select(UserSession).where(UserSession.session_id == session_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def issue_tokens(
        session: AsyncSession,
        account: Account,
        device_info: DeviceInfo | None,
        now: datetime,
        existing_session_id: str | None = None,
    ) -> TokenBundle:
        """Mint an access/refresh pair and upsert the session it belongs to.

        A refresh passes ``existing_session_id`` so the session survives while
        its tokens rotate; every other caller starts a new session. The quick
        login window is pushed out to its full length on every issuance.

        Args:
            session: Database session
            account: Account the tokens are issued to
            device_info: Device metadata, kept on the session when supplied
            now: Issue time from the injected clock
            existing_session_id: Session to keep when rotating

        Returns:
            TokenBundle with account summary, token pair and session descriptor

        """
        session_id = existing_session_id or str(uuid4())
        access_delta = timedelta(hours=settings.access_token_expire_hours)
        refresh_delta = timedelta(days=settings.refresh_token_expire_days)

        claims = {
            "sub": str(account.id),
            "username": account.username,
            "email": account.email,
            "sessionId": session_id,
        }
        access_token = create_access_token(claims, now, access_delta)
        refresh_token = create_refresh_token(claims, now, refresh_delta)

        expires_at = now + access_delta
        quick_login_expires_at = now + timedelta(days=settings.quick_login_window_days)

        user_session = None
        if existing_session_id is not None:
            user_session = await TokenService.get_session(session, existing_session_id)

        if user_session is None:
            user_session = UserSession(
                session_id=session_id,
                account_id=account.id,
                device_id=device_info.device_id if device_info else None,
                device_info=device_info.as_blob() if device_info else None,
                quick_login_enabled=True,
                created_at=now,
            )
            session.add(user_session)
        elif device_info is not None:
            user_session.device_info = device_info.as_blob()

        user_session.access_token = access_token
        user_session.is_active = True
        user_session.last_activity_at = now
        user_session.expires_at = expires_at
        user_session.quick_login_expires_at = quick_login_expires_at

        session.add(
            RefreshToken(
                account_id=account.id,
                session_id=session_id,
                token=refresh_token,
                expires_at=now + refresh_delta,
                created_at=now,
            )
        )
        await session.flush()

        return TokenBundle(
            user=AccountUser.model_validate(account),
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_in=int(access_delta.total_seconds()),
            ),
            session=SessionDescriptor.model_validate(user_session),
        )

    @staticmethod
    async def refresh(session: AsyncSession, token: str, now: datetime) -> TokenBundle:
        """Rotate a refresh token.

        The consumed row is deactivated with a compare-and-set in the same
        transaction that stores its successor, so of two concurrent refreshes
        with one token only one succeeds.

        Raises:
            InvalidRefreshToken: If the token is malformed, unknown, rotated,
                revoked or expired, or its account is no longer active

        """
        try:
            payload = decode_token(token, now)
        except InvalidTokenError as err:
            raise InvalidRefreshToken() from err
        if not verify_token_type(payload, "refresh"):
            raise InvalidRefreshToken()

        stmt = select(RefreshToken).where(
            RefreshToken.token == token,
            RefreshToken.is_active.is_(True),
            RefreshToken.expires_at > now,
        )
        stored = (await session.execute(stmt)).scalar_one_or_none()
        if stored is None:
            raise InvalidRefreshToken()

        consume = (
            update(RefreshToken)
            .where(RefreshToken.id == stored.id, RefreshToken.is_active.is_(True))
            .values(is_active=False, rotated=True, deactivated_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        if (await session.execute(consume)).rowcount != 1:
            logger.warning(f"Refresh token for session {stored.session_id} was rotated concurrently")
            raise InvalidRefreshToken()

        account = await AccountService.get_account(session, stored.account_id)
        if account is None or not account.is_active or not account.is_registered:
            raise InvalidRefreshToken()

        return await TokenService.issue_tokens(session, account, None, now, existing_session_id=stored.session_id)

    @staticmethod
    async def validate_access_token(session: AsyncSession, token: str, now: datetime) -> Principal:
        """Resolve an access token to its live session and account.

        The token must be the one currently stored on an active, unexpired
        session, so access tokens replaced by a refresh stop working. Touches
        ``last_activity_at``.

        Raises:
            Unauthenticated: On any failure

        """
        try:
            payload = decode_token(token, now)
        except InvalidTokenError as err:
            raise Unauthenticated("Invalid or expired token") from err

        session_id = payload.get("sessionId")
        if not verify_token_type(payload, "access") or not session_id:
            raise Unauthenticated("Invalid token payload")

        user_session = await TokenService.get_session(session, str(session_id))
        if (
            user_session is None
            or not user_session.is_active
            or user_session.expires_at <= now
            or user_session.access_token != token
        ):
            raise Unauthenticated()

        account = await AccountService.get_account(session, user_session.account_id)
        if account is None or not account.is_active:
            raise Unauthenticated()

        user_session.last_activity_at = now
        return Principal(
            account_id=account.id,
            username=account.username,
            email=account.email,
            name=account.name,
            session_id=user_session.session_id,
        )

    @staticmethod
    async def deactivate_for_account(
        session: AsyncSession, account_id: UUID, now: datetime, session_id: str | None = None
    ) -> tuple[int, int]:
        """Deactivate an account's sessions and refresh tokens.

        Returns:
            (sessions deactivated, refresh tokens deactivated)

        """
        session_stmt = update(UserSession).where(UserSession.account_id == account_id, UserSession.is_active.is_(True))
        token_stmt = update(RefreshToken).where(RefreshToken.account_id == account_id, RefreshToken.is_active.is_(True))
        if session_id is not None:
            session_stmt = session_stmt.where(UserSession.session_id == session_id)
            token_stmt = token_stmt.where(RefreshToken.session_id == session_id)

        sessions = await session.execute(session_stmt.values(is_active=False))
        tokens = await session.execute(token_stmt.values(is_active=False, deactivated_at=now))
        return sessions.rowcount, tokens.rowcount

    @staticmethod
    async def find_quick_login_session(session: AsyncSession, account_id: UUID, now: datetime) -> UserSession | None:
        """Most recent active session still inside its quick login window."""
        stmt = (
            select(UserSession)
            .where(
                UserSession.account_id == account_id,
                UserSession.is_active.is_(True),
                UserSession.quick_login_enabled.is_(True),
                UserSession.quick_login_expires_at > now,
            )
            .order_by(UserSession.last_activity_at.desc(), UserSession.id.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def has_quick_access(session: AsyncSession, account_id: UUID, now: datetime) -> bool:
        return await TokenService.find_quick_login_session(session, account_id, now) is not None

    @staticmethod
    async def has_active_session(session: AsyncSession, account_id: UUID) -> bool:
        stmt = (
            select(UserSession.id)
            .where(UserSession.account_id == account_id, UserSession.is_active.is_(True))
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none() is not None
