"""Device account registry service."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.features.account.models import Account
from src.shared.schemas import SideEffectResult

from .models import SavedAccount
from .schemas import (
    AccountDeviceAnalytics,
    DeviceAnalytics,
    DeviceInfo,
    DeviceMetadata,
    DeviceSettings,
    SavedAccountResponse,
)

logger = logging.getLogger(__name__)

_METADATA_FIELDS = ("device_name", "device_type", "device_os", "app_version", "user_agent")


class DeviceRegistryService:
    """Tracks which accounts have been used on which devices."""

    @staticmethod
    async def get_binding(session: AsyncSession, account_id: UUID, device_id: str) -> SavedAccount | None:
        stmt = select(SavedAccount).where(SavedAccount.account_id == account_id, SavedAccount.device_id == device_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def save_binding(
        session: AsyncSession,
        account_id: UUID,
        device_info: DeviceInfo,
        now: datetime,
        settings: DeviceSettings | None = None,
    ) -> SavedAccount:
        """Upsert the (account, device) binding.

        A repeat save increments ``access_count``, refreshes metadata and
        reactivates a soft-deleted row. Missing metadata keeps the stored value.
        """
        binding = await DeviceRegistryService.get_binding(session, account_id, device_info.device_id)

        if binding is None:
            binding = SavedAccount(
                account_id=account_id,
                device_id=device_info.device_id,
                access_count=1,
                first_saved_at=now,
                last_accessed_at=now,
                biometric_enabled=False,
                quick_login_enabled=True,
            )
            session.add(binding)
        else:
            binding.access_count += 1
            binding.last_accessed_at = now
            binding.is_active = True
            binding.updated_at = now

        for field in _METADATA_FIELDS:
            value = getattr(device_info, field)
            if value:
                setattr(binding, field, value)
        binding.ip_address = device_info.ip_address
        binding.location = device_info.location

        if settings is not None:
            if settings.biometric_enabled is not None:
                binding.biometric_enabled = settings.biometric_enabled
            if settings.quick_login_enabled is not None:
                binding.quick_login_enabled = settings.quick_login_enabled

        await session.flush()
        return binding

    @staticmethod
    async def record_device_usage(
        session: AsyncSession,
        account_id: UUID,
        device_info: DeviceInfo | None,
        now: datetime,
        settings: DeviceSettings | None = None,
    ) -> SideEffectResult:
        """Best-effort variant of :meth:`save_binding` used by the login flows.

        Runs in a SAVEPOINT and never raises: a storage failure is rolled back
        on its own and reported in the result.
        """
        if device_info is None or not device_info.device_id:
            return SideEffectResult.skipped("no device id supplied")

        try:
            async with session.begin_nested():
                binding = await DeviceRegistryService.save_binding(session, account_id, device_info, now, settings)
        except SQLAlchemyError as exc:
            logger.error(f"Device usage not recorded for account {account_id}: {exc}", exc_info=True)
            return SideEffectResult.failed("device registry unavailable")

        return SideEffectResult.ok(f"access count {binding.access_count}")

    @staticmethod
    async def list_accounts_for_device(session: AsyncSession, device_id: str) -> list[tuple[SavedAccount, Account]]:
        """Active bindings on a device with their active accounts, most recent first."""
        stmt = (
            select(SavedAccount, Account)
            .join(Account, Account.id == SavedAccount.account_id)
            .where(
                SavedAccount.device_id == device_id,
                SavedAccount.is_active.is_(True),
                Account.is_active.is_(True),
            )
            .order_by(SavedAccount.last_accessed_at.desc())
        )
        result = await session.execute(stmt)
        return [(binding, account) for binding, account in result.all()]

    @staticmethod
    async def list_devices_for_account(session: AsyncSession, account_id: UUID) -> list[SavedAccount]:
        stmt = (
            select(SavedAccount)
            .where(SavedAccount.account_id == account_id, SavedAccount.is_active.is_(True))
            .order_by(SavedAccount.last_accessed_at.desc())
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def remove_one_binding(session: AsyncSession, account_id: UUID, device_id: str, now: datetime) -> bool:
        """Soft-remove one binding. False when nothing active matched."""
        stmt = (
            update(SavedAccount)
            .where(
                SavedAccount.account_id == account_id,
                SavedAccount.device_id == device_id,
                SavedAccount.is_active.is_(True),
            )
            .values(is_active=False, updated_at=now)
        )
        result = await session.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def clear_all_bindings_for_device(session: AsyncSession, device_id: str, now: datetime) -> int:
        stmt = (
            update(SavedAccount)
            .where(SavedAccount.device_id == device_id, SavedAccount.is_active.is_(True))
            .values(is_active=False, updated_at=now)
        )
        result = await session.execute(stmt)
        return result.rowcount

    @staticmethod
    async def remove_account_everywhere(session: AsyncSession, account_id: UUID, now: datetime) -> int:
        stmt = (
            update(SavedAccount)
            .where(SavedAccount.account_id == account_id, SavedAccount.is_active.is_(True))
            .values(is_active=False, updated_at=now)
        )
        result = await session.execute(stmt)
        return result.rowcount

    @staticmethod
    async def update_settings(
        session: AsyncSession, account_id: UUID, device_id: str, settings: DeviceSettings, now: datetime
    ) -> SavedAccount | None:
        binding = await DeviceRegistryService.get_binding(session, account_id, device_id)
        if binding is None or not binding.is_active:
            return None

        if settings.biometric_enabled is not None:
            binding.biometric_enabled = settings.biometric_enabled
        if settings.quick_login_enabled is not None:
            binding.quick_login_enabled = settings.quick_login_enabled
        binding.updated_at = now
        await session.flush()
        return binding

    @staticmethod
    async def device_analytics(session: AsyncSession, device_id: str) -> DeviceAnalytics:
        stmt = (
            select(SavedAccount)
            .where(SavedAccount.device_id == device_id, SavedAccount.is_active.is_(True))
            .order_by(SavedAccount.last_accessed_at.desc())
        )
        bindings = list((await session.execute(stmt)).scalars().all())
        if not bindings:
            return DeviceAnalytics(total_accounts=0, total_access=0)

        latest = bindings[0]
        return DeviceAnalytics(
            total_accounts=len(bindings),
            total_access=sum(b.access_count for b in bindings),
            most_recent_access=latest.last_accessed_at,
            oldest_account=min(b.first_saved_at for b in bindings),
            device_info=DeviceMetadata.model_validate(latest),
        )

    @staticmethod
    async def account_analytics(session: AsyncSession, account_id: UUID) -> AccountDeviceAnalytics:
        bindings = await DeviceRegistryService.list_devices_for_account(session, account_id)
        if not bindings:
            return AccountDeviceAnalytics(total_devices=0, total_access=0)

        most_active = max(bindings, key=lambda b: b.access_count)
        return AccountDeviceAnalytics(
            total_devices=len(bindings),
            total_access=sum(b.access_count for b in bindings),
            most_active_device=SavedAccountResponse.model_validate(most_active),
            recent_devices=[SavedAccountResponse.model_validate(b) for b in bindings[:5]],
        )

    @staticmethod
    async def purge_stale(session: AsyncSession, max_age_days: int, now: datetime) -> int:
        """Hard-delete inactive bindings not accessed for ``max_age_days``."""
        cutoff = now - timedelta(days=max_age_days)
        stmt = delete(SavedAccount).where(
            SavedAccount.is_active.is_(False),
            SavedAccount.last_accessed_at < cutoff,
        )
        result = await session.execute(stmt)
        logger.info(f"Purged {result.rowcount} stale device bindings older than {max_age_days} days")
        return result.rowcount
