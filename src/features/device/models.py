"""Device account registry models."""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint, Uuid, false, true
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, UTCDateTime


class SavedAccount(Base):
    """Binding of an account to a physical device.

    Devices have no record of their own; they are identified only by the
    client-supplied ``device_id``. At most one row exists per (account, device)
    pair, and rows are soft-deleted through ``is_active``.
    """

    __tablename__ = "saved_accounts"
    __table_args__ = (UniqueConstraint("account_id", "device_id", name="uq_saved_accounts_account_device"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    device_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Device metadata (last reported)
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    device_os: Mapped[str | None] = mapped_column(String(100), nullable=True)
    app_version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Usage
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    first_saved_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC))
    last_accessed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC), index=True
    )

    # Per-device settings
    biometric_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    quick_login_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true(), index=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
