"""Audit trail for authentication state transitions."""

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Enum, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, UTCDateTime

logger = logging.getLogger(__name__)


class AuditAction(StrEnum):
    """Audited authentication events."""

    QR_SCANNED = "qr_scanned"
    REREGISTRATION_RESET = "reregistration_reset"
    CODE_ISSUED = "code_issued"
    CODE_VERIFIED = "code_verified"
    REGISTRATION_COMPLETED = "registration_completed"
    LOGIN = "login"
    QUICK_LOGIN = "quick_login"
    REAUTH_REQUIRED = "reauth_required"
    TOKENS_REFRESHED = "tokens_refreshed"
    LOGOUT = "logout"
    SESSION_RECOVERED = "session_recovered"


class AuditLog(Base):
    """One completed authentication transition.

    Rows are added to the same transaction as the transition itself, so an
    entry exists exactly when the state change was committed.
    """

    __tablename__ = "auth_audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, native_enum=False, length=50, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(UTC),
        nullable=False,
        index=True,
    )

    # Subject
    account_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    identity_ref: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)


def record_audit_event(
    session: AsyncSession,
    action: AuditAction,
    *,
    account_id: Any = None,
    identity_ref: str | None = None,
    email: str | None = None,
    device_id: str | None = None,
    details: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """Stage an audit entry on the session; the caller's commit persists it.

    Args:
        session: Database session of the current request
        action: Transition being recorded
        account_id: Account the transition applies to, if any
        identity_ref: Canonical legacy identity reference, if known
        email: Email the flow is keyed on, if any
        device_id: Device the request came from, if known
        details: Extra non-secret context
        timestamp: Event time, defaults to now

    Returns:
        The staged AuditLog row

    """
    entry = AuditLog(
        action=action,
        account_id=str(account_id) if account_id is not None else None,
        identity_ref=identity_ref,
        email=email,
        device_id=device_id,
        details=details,
        timestamp=timestamp or datetime.now(UTC),
    )
    session.add(entry)
    return entry


async def list_audit_events(session: AsyncSession, account_id: Any, limit: int = 50) -> list[AuditLog]:
    """Most recent audit entries for an account, newest first."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.account_id == str(account_id))
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
