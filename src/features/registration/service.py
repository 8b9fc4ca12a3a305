"""Verification code and registration session stores."""

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.identity.schemas import LegacyIdentity

from .models import RegistrationSession, VerificationCode

logger = logging.getLogger(__name__)


def generate_verification_code() -> str:
    """Uniformly random 6-digit numeric code (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))


class VerificationCodeStore:
    """Short-lived single-use email codes."""

    @staticmethod
    async def issue(session: AsyncSession, email: str, now: datetime) -> VerificationCode:
        """Issue a fresh code for an email, invalidating every earlier unused one.

        Both writes run in the caller's transaction, so a stale code can never
        validate after a newer one was issued.
        """
        invalidate = (
            update(VerificationCode)
            .where(VerificationCode.email == email, VerificationCode.is_used.is_(False))
            .values(is_used=True, used_at=now)
        )
        await session.execute(invalidate)

        verification = VerificationCode(
            email=email,
            code=generate_verification_code(),
            expires_at=now + timedelta(minutes=settings.verification_code_ttl_minutes),
            max_attempts=settings.verification_code_max_attempts,
            created_at=now,
        )
        session.add(verification)
        await session.flush()
        return verification

    @staticmethod
    async def find_valid(session: AsyncSession, email: str, code: str, now: datetime) -> VerificationCode | None:
        """Unused, unexpired code matching (email, code)."""
        stmt = (
            select(VerificationCode)
            .where(
                VerificationCode.email == email,
                VerificationCode.code == code,
                VerificationCode.is_used.is_(False),
                VerificationCode.expires_at > now,
            )
            .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def record_failed_attempt(session: AsyncSession, email: str) -> None:
        """Count a wrong guess against every pending code for the email."""
        stmt = (
            update(VerificationCode)
            .where(VerificationCode.email == email, VerificationCode.is_used.is_(False))
            .values(attempts=VerificationCode.attempts + 1)
        )
        await session.execute(stmt)

    @staticmethod
    async def consume(session: AsyncSession, verification: VerificationCode, now: datetime) -> bool:
        """Mark a code used. Compare-and-set, so a code verifies at most once."""
        stmt = (
            update(VerificationCode)
            .where(VerificationCode.id == verification.id, VerificationCode.is_used.is_(False))
            .values(is_used=True, used_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        result = await session.execute(stmt)
        return result.rowcount == 1


class RegistrationSessionStore:
    """Sessions bridging a QR scan to password setup."""

    @staticmethod
    async def open(session: AsyncSession, identity: LegacyIdentity, now: datetime) -> RegistrationSession:
        """Open a registration session for an identity, closing any earlier unused one."""
        close_previous = (
            update(RegistrationSession)
            .where(
                RegistrationSession.is_used.is_(False),
                (RegistrationSession.email == identity.email) | (RegistrationSession.identity_ref == identity.ref),
            )
            .values(is_used=True, used_at=now)
        )
        await session.execute(close_previous)

        registration = RegistrationSession(
            token=secrets.token_urlsafe(32),
            identity_ref=identity.ref,
            username=identity.username,
            email=identity.email,
            name=identity.name,
            phone=identity.phone,
            expires_at=now + timedelta(minutes=settings.registration_session_ttl_minutes),
            created_at=now,
        )
        session.add(registration)
        await session.flush()
        return registration

    @staticmethod
    async def find_active(session: AsyncSession, email: str, now: datetime) -> RegistrationSession | None:
        """Newest unused, unexpired registration session for an email."""
        stmt = (
            select(RegistrationSession)
            .where(
                RegistrationSession.email == email,
                RegistrationSession.is_used.is_(False),
                RegistrationSession.expires_at > now,
            )
            .order_by(RegistrationSession.created_at.desc(), RegistrationSession.id.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_email_verified(session: AsyncSession, email: str, now: datetime) -> RegistrationSession | None:
        """Stamp the active registration session of an email as email-verified."""
        registration = await RegistrationSessionStore.find_active(session, email, now)
        if registration is not None:
            registration.email_verified_at = now
            await session.flush()
        return registration

    @staticmethod
    async def consume(session: AsyncSession, registration: RegistrationSession, now: datetime) -> bool:
        """Mark a session used. Compare-and-set, so registration completes at most once."""
        stmt = (
            update(RegistrationSession)
            .where(RegistrationSession.id == registration.id, RegistrationSession.is_used.is_(False))
            .values(is_used=True, used_at=now)
            .execution_options(synchronize_session="evaluate")
        )
        result = await session.execute(stmt)
        return result.rowcount == 1
