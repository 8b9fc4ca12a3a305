"""Account domain models."""

from datetime import datetime
from uuid import UUID, uuid4

from pwdlib import PasswordHash
from sqlalchemy import Boolean, String, Uuid, false, true
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin, UTCDateTime

pwd_hasher = PasswordHash.recommended()


class Account(Base, TimestampMixin):
    """Mobile app account bound to one legacy ERP identity.

    Aggregate root for sessions, refresh tokens and device bindings. An account
    with ``is_registered`` set and ``is_logged_out`` cleared is claimed: any
    further QR scan for the same identity is rejected until logout.
    """

    __tablename__ = "accounts"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Identity (denormalized copy of the legacy ERP record)
    identity_ref: Mapped[str] = mapped_column(String(100), nullable=False, unique=True, index=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Authentication (null until registration completes)
    hashed_password: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Lifecycle flags
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    password_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_registered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    is_logged_out: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    requires_reauth: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    # Audit
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_logout_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_password_check: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    @property
    def is_claimed(self) -> bool:
        """Registered and not logged out: the identity cannot be enrolled again."""
        return self.is_registered and not self.is_logged_out

    def verify_password(self, plain_password: str) -> bool:
        """Verify a password against the stored mobile password hash."""
        if not self.hashed_password:
            return False
        return pwd_hasher.verify(plain_password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using Argon2.

        Salt is automatically generated and embedded in the returned hash.
        """
        return pwd_hasher.hash(password)
