"""Account schemas (DTOs)."""

from datetime import datetime
from uuid import UUID

from src.shared.schemas import CamelModel


class AccountSummary(CamelModel):
    """Public view of an account, shared by registration and token responses."""

    id: UUID
    username: str
    email: str
    name: str


class RegisteredAccount(CamelModel):
    """Account data returned once registration completes."""

    user_id: UUID
    username: str
    email: str
    name: str


class AccountStatus(CamelModel):
    """Lifecycle flags, used by session recovery diagnostics."""

    is_registered: bool
    is_active: bool
    is_logged_out: bool
    requires_reauth: bool
    last_login_at: datetime | None = None
    last_logout_at: datetime | None = None
