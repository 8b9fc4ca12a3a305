"""Account record store."""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.features.identity.schemas import LegacyIdentity
from src.features.registration.models import RegistrationSession

from .models import Account

logger = logging.getLogger(__name__)


class AccountService:
    """Reads and lifecycle writes for mobile app accounts."""

    @staticmethod
    async def get_account(session: AsyncSession, account_id: UUID) -> Account | None:
        stmt = select(Account).where(Account.id == account_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_by_email(session: AsyncSession, email: str) -> Account | None:
        stmt = select(Account).where(Account.email == email.strip().lower())
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_login_account(session: AsyncSession, username: str) -> Account | None:
        """Account eligible for password login: active and registered."""
        stmt = select(Account).where(
            Account.username == username,
            Account.is_active,
            Account.is_registered,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def find_for_identity(
        session: AsyncSession, identity_ref: str, email: str, lock: bool = False
    ) -> Account | None:
        """Resolve a canonical identity reference to its local account.

        One indexed lookup by ``identity_ref``. Email is unique too, so an
        account stored under a stale reference is found by email and adopts the
        canonical reference.

        Args:
            session: Database session
            identity_ref: Canonical legacy identity reference
            email: Identity email (lower-case)
            lock: Take a row lock (SELECT ... FOR UPDATE) where supported

        Returns:
            Account or None

        """
        stmt = select(Account).where(Account.identity_ref == identity_ref)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        account = result.scalar_one_or_none()
        if account is not None:
            return account

        stmt = select(Account).where(Account.email == email)
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        account = result.scalar_one_or_none()
        if account is not None:
            logger.warning(f"Account {account.id} re-keyed from identity {account.identity_ref} to {identity_ref}")
            account.identity_ref = identity_ref
        return account

    @staticmethod
    async def reset_for_reregistration(
        session: AsyncSession, account: Account, identity: LegacyIdentity, now: datetime
    ) -> bool:
        """Return a logged-out account to its pre-registration state.

        Compare-and-set on ``is_logged_out``: only one concurrent scan performs
        the reset. Password, verification flags and login timestamps are cleared
        and the identity copy is refreshed from the legacy record.

        Returns:
            True if this call performed the reset

        """
        stmt = (
            update(Account)
            .where(Account.id == account.id, Account.is_logged_out.is_(True))
            .values(
                hashed_password=None,
                email_verified=False,
                password_verified=False,
                is_registered=False,
                requires_reauth=False,
                last_login_at=None,
                last_password_check=None,
                username=identity.username,
                email=identity.email,
                name=identity.name,
                phone=identity.phone,
                updated_at=now,
            )
            .execution_options(synchronize_session="evaluate")
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            return False

        logger.info(f"Account {account.id} reset for re-registration")
        return True

    @staticmethod
    async def upsert_registered(
        session: AsyncSession,
        registration: RegistrationSession,
        hashed_password: str,
        now: datetime,
    ) -> Account | None:
        """Create or fully re-activate the account bound to a registration session.

        The unique constraint on ``identity_ref`` decides concurrent creations;
        the losing insert is rolled back to its SAVEPOINT and the winner's row is
        updated instead, unless that row is already claimed.

        Returns:
            The registered account, or None if the identity is already claimed

        """
        account = await AccountService.find_for_identity(
            session, registration.identity_ref, registration.email, lock=True
        )

        if account is None:
            account = Account(
                identity_ref=registration.identity_ref,
                username=registration.username,
                email=registration.email,
                name=registration.name,
                phone=registration.phone,
            )
            try:
                async with session.begin_nested():
                    session.add(account)
            except IntegrityError:
                logger.warning(f"Concurrent registration for identity {registration.identity_ref}")
                account = await AccountService.find_for_identity(
                    session, registration.identity_ref, registration.email, lock=True
                )
                if account is None:
                    return None

        if account.is_claimed:
            return None

        account.hashed_password = hashed_password
        account.email_verified = True
        account.password_verified = True
        account.is_registered = True
        account.is_active = True
        account.is_logged_out = False
        account.requires_reauth = False
        account.last_password_check = now
        account.updated_at = now
        await session.flush()
        return account

    @staticmethod
    async def mark_logged_out(session: AsyncSession, account: Account, now: datetime) -> None:
        account.is_logged_out = True
        account.last_logout_at = now
        account.updated_at = now
