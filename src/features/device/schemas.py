"""Device registry schemas (DTOs)."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from src.shared.schemas import CamelModel


class DeviceInfo(CamelModel):
    """Device metadata reported by the mobile client at login."""

    device_id: str | None = Field(None, max_length=255)
    device_name: str | None = Field(None, max_length=255)
    device_type: str | None = Field(None, max_length=50, description="iOS, Android or Web")
    device_os: str | None = Field(None, max_length=100)
    app_version: str | None = Field(None, max_length=50)
    user_agent: str | None = Field(None, max_length=500)
    ip_address: str | None = Field(None, max_length=45)
    location: str | None = Field(None, max_length=255)

    def as_blob(self) -> dict[str, Any]:
        """JSON-safe copy stored on the session row."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DeviceSettings(CamelModel):
    """Per-device account settings. Omitted fields keep their current value."""

    biometric_enabled: bool | None = None
    quick_login_enabled: bool | None = None


class SaveDeviceRequest(CamelModel):
    device_info: DeviceInfo
    settings: DeviceSettings | None = None


class SavedAccountResponse(CamelModel):
    """One account binding on one device."""

    id: int
    account_id: UUID
    device_id: str
    device_name: str | None = None
    device_type: str | None = None
    device_os: str | None = None
    app_version: str | None = None
    access_count: int
    first_saved_at: datetime
    last_accessed_at: datetime
    biometric_enabled: bool
    quick_login_enabled: bool
    is_active: bool


class DeviceMetadata(CamelModel):
    device_name: str | None = None
    device_type: str | None = None
    device_os: str | None = None
    app_version: str | None = None


class DeviceAnalytics(CamelModel):
    total_accounts: int
    total_access: int
    most_recent_access: datetime | None = None
    oldest_account: datetime | None = None
    device_info: DeviceMetadata | None = None


class AccountDeviceAnalytics(CamelModel):
    total_devices: int
    total_access: int
    most_active_device: SavedAccountResponse | None = None
    recent_devices: list[SavedAccountResponse] = []


class RemovalResponse(CamelModel):
    success: bool
    removed: int
