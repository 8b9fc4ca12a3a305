"""Device registry router (saved accounts management endpoints)."""

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.database.dependencies import get_db_session
from src.features.auth.dependencies import get_clock, get_current_principal
from src.features.auth.tokens import Principal
from src.shared.clock import Clock

from .schemas import (
    AccountDeviceAnalytics,
    DeviceAnalytics,
    DeviceSettings,
    RemovalResponse,
    SaveDeviceRequest,
    SavedAccountResponse,
)
from .service import DeviceRegistryService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/devices", tags=["Devices"])


async def require_maintenance_key(x_maintenance_key: str | None = Header(None)) -> None:
    """Guard operator endpoints with the configured maintenance key."""
    expected = settings.maintenance_api_key
    if not expected or not x_maintenance_key or not secrets.compare_digest(x_maintenance_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Maintenance key required")


async def require_device_binding(
    device_id: str,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
) -> Principal:
    """Allow device-wide operations only to accounts actively saved on that device."""
    binding = await DeviceRegistryService.get_binding(session, principal.account_id, device_id)
    if binding is None or not binding.is_active:
        logger.warning(f"Account {principal.account_id} denied access to device {device_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is not saved on this device")
    return principal


@router.delete("/stale", response_model=RemovalResponse, dependencies=[Depends(require_maintenance_key)])
async def purge_stale_devices(
    max_age_days: int = Query(90, alias="maxAgeDays", ge=1),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Operator maintenance: hard-delete inactive bindings older than ``maxAgeDays``."""
    purged = await DeviceRegistryService.purge_stale(session, max_age_days, clock())
    await session.commit()
    return RemovalResponse(success=True, removed=purged)


@router.post("/save", response_model=SavedAccountResponse)
async def save_device(
    data: SaveDeviceRequest,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Save the current account on a device, or refresh the existing binding.

    - **deviceInfo.deviceId**: Required device identifier
    - **settings**: Optional biometric / quick login preferences
    """
    if not data.device_info.device_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="deviceId is required")

    binding = await DeviceRegistryService.save_binding(
        session, principal.account_id, data.device_info, clock(), data.settings
    )
    await session.commit()
    return binding


@router.get("/mine", response_model=list[SavedAccountResponse])
async def my_devices(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
):
    devices = await DeviceRegistryService.list_devices_for_account(session, principal.account_id)
    await session.commit()
    return devices


@router.get("/mine/analytics", response_model=AccountDeviceAnalytics)
async def my_device_analytics(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
):
    analytics = await DeviceRegistryService.account_analytics(session, principal.account_id)
    await session.commit()
    return analytics


@router.get("/{device_id}/accounts", response_model=list[SavedAccountResponse])
async def device_accounts(
    device_id: str,
    _: Principal = Depends(require_device_binding),
    session: AsyncSession = Depends(get_db_session),
):
    """Active account bindings on a device, most recently used first."""
    rows = await DeviceRegistryService.list_accounts_for_device(session, device_id)
    await session.commit()
    return [binding for binding, _account in rows]


@router.get("/{device_id}/analytics", response_model=DeviceAnalytics)
async def device_analytics(
    device_id: str,
    _: Principal = Depends(require_device_binding),
    session: AsyncSession = Depends(get_db_session),
):
    analytics = await DeviceRegistryService.device_analytics(session, device_id)
    await session.commit()
    return analytics


@router.patch("/{device_id}/settings", response_model=SavedAccountResponse)
async def update_device_settings(
    device_id: str,
    data: DeviceSettings,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    binding = await DeviceRegistryService.update_settings(session, principal.account_id, device_id, data, clock())
    if binding is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account is not saved on this device")
    await session.commit()
    return binding


@router.delete("/{device_id}", response_model=RemovalResponse)
async def remove_from_device(
    device_id: str,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Remove the current account from one device."""
    removed = await DeviceRegistryService.remove_one_binding(session, principal.account_id, device_id, clock())
    await session.commit()
    return RemovalResponse(success=True, removed=int(removed))


@router.delete("/{device_id}/accounts", response_model=RemovalResponse)
async def clear_device(
    device_id: str,
    _: Principal = Depends(require_device_binding),
    session: AsyncSession = Depends(get_db_session),
    clock: Clock = Depends(get_clock),
):
    """Remove every account from a device (device reset).

    Only an account saved on the device may reset it.
    """
    removed = await DeviceRegistryService.clear_all_bindings_for_device(session, device_id, clock())
    await session.commit()
    logger.info(f"Device {device_id} cleared: {removed} bindings removed")
    return RemovalResponse(success=True, removed=removed)
