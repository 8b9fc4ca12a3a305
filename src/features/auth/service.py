"""Authentication orchestrator.

Composes the identity gateway, the registration stores, the account store, the
token manager and the device registry into the mobile auth flows:

    QR scan -> email code -> ERP password -> mobile password -> login
    login / quick login -> refresh -> logout -> (QR scan again)

Every transition is staged on the request's database session; the router
commits on success. Failed attempts that must survive the error (code attempt
counters, the re-authentication flag) are committed here before raising.
"""

import asyncio
import logging
from collections.abc import Awaitable
from uuid import UUID

from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import settings
from src.features.account.models import Account
from src.features.account.schemas import RegisteredAccount
from src.features.account.service import AccountService
from src.features.device.schemas import DeviceInfo
from src.features.device.service import DeviceRegistryService
from src.features.identity.exceptions import InvalidQrPayload, LegacyGatewayUnavailable, LegacyTokenRejected
from src.features.identity.gateway import LegacyIdentityGateway
from src.features.identity.qr import decode_qr_payload
from src.features.identity.schemas import LegacyIdentity
from src.features.registration.service import RegistrationSessionStore, VerificationCodeStore
from src.shared.audit.audit import AuditAction, record_audit_event
from src.shared.clock import Clock, utcnow
from src.shared.notifications.email import Notifier
from src.shared.schemas import SideEffectResult

from .exceptions import (
    AccountInactive,
    AccountNotFound,
    AlreadyRegistered,
    EmailNotVerified,
    IdentityUnavailable,
    InvalidCredentials,
    InvalidOrExpiredCode,
    InvalidOrExpiredToken,
    InvalidPayload,
    NoActiveSession,
    PasswordMismatch,
    ReauthRequired,
    SessionExpired,
    SessionExpiredAfterLogout,
    TooManyAttempts,
)
from .schemas import (
    CompleteRegistrationResponse,
    IdentityEcho,
    LogoutResponse,
    NextStep,
    NextStepData,
    NextStepResponse,
    RecoverSessionResponse,
    RecoveryAction,
    ResendCodeResponse,
    SavedAccountSummary,
    ScanEntryResponse,
    TokenBundle,
    VerifyLegacyPasswordResponse,
)
from .tokens import TokenService

logger = logging.getLogger(__name__)


class AuthService:
    """Authentication state machine for the mobile app."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: LegacyIdentityGateway,
        notifier: Notifier,
        clock: Clock = utcnow,
        background: BackgroundTasks | None = None,
    ):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.clock = clock
        # Request-scoped tasks run after the response is sent; None sends inline
        self.background = background

    # Collaborators

    async def _call_gateway[T](self, call: Awaitable[T]) -> T:
        """Await a gateway call under the configured deadline, mapping failures to typed errors."""
        try:
            async with asyncio.timeout(settings.legacy_erp_timeout_seconds):
                return await call
        except TimeoutError as err:
            logger.error(f"Legacy ERP call exceeded {settings.legacy_erp_timeout_seconds}s")
            raise IdentityUnavailable() from err
        except LegacyGatewayUnavailable as err:
            raise IdentityUnavailable() from err
        except LegacyTokenRejected as err:
            raise InvalidOrExpiredToken() from err

    async def _send_code(self, email: str, code: str, name: str) -> SideEffectResult:
        """Send a verification code. Never fails the calling flow."""
        try:
            delivered = await self.notifier.send_verification_code(email, code, name)
        except Exception as exc:
            logger.error(f"Verification code dispatch to {email} raised: {exc}", exc_info=True)
            return SideEffectResult.failed("notification channel error")

        if not delivered:
            logger.warning(f"Verification code for {email} was not delivered")
            return SideEffectResult.failed("not delivered")
        return SideEffectResult.ok("sent")

    async def _dispatch_code(self, email: str, code: str, name: str) -> SideEffectResult:
        """Queue the code for sending after the response when running in a request, else send it now."""
        if self.background is not None:
            self.background.add_task(self._send_code, email, code, name)
            return SideEffectResult.queued()
        return await self._send_code(email, code, name)

    async def _check_login_password(self, account: Account, password: str) -> bool:
        if settings.password_authority == "local":
            return account.verify_password(password)
        return await self._call_gateway(self.gateway.verify_password(account.identity_ref, password))

    # Registration

    async def scan_entry(self, qr_data: str) -> ScanEntryResponse:
        """Start (or restart) registration from a scanned QR code.

        Args:
            qr_data: Raw QR text, JSON or base64-encoded JSON

        Returns:
            ScanEntryResponse echoing the identity with ``next_step=email_verification``

        Raises:
            InvalidPayload: If the QR payload cannot be decoded
            IdentityUnavailable: If the legacy ERP is unreachable
            InvalidOrExpiredToken: If the legacy ERP rejects the token or the identity is inactive
            AlreadyRegistered: If the identity's account is claimed (registered, not logged out)

        """
        now = self.clock()
        try:
            payload = decode_qr_payload(qr_data, now_ms=int(now.timestamp() * 1000))
        except InvalidQrPayload as err:
            logger.warning(f"Rejected QR payload: {err}")
            raise InvalidPayload() from err

        identity: LegacyIdentity = await self._call_gateway(self.gateway.validate_token(payload.token))
        if not identity.is_active:
            logger.warning(f"QR scan for inactive legacy identity {identity.ref}")
            raise InvalidOrExpiredToken("Identity is inactive in the ERP")

        account = await AccountService.find_for_identity(self.session, identity.ref, identity.email, lock=True)
        if account is not None:
            if account.is_claimed:
                logger.warning(f"QR scan for already registered identity {identity.ref}")
                raise AlreadyRegistered(account.username, account.email)

            if account.is_logged_out:
                if not await AccountService.reset_for_reregistration(self.session, account, identity, now):
                    raise AlreadyRegistered(account.username, account.email)
                record_audit_event(
                    self.session,
                    AuditAction.REREGISTRATION_RESET,
                    account_id=account.id,
                    identity_ref=identity.ref,
                    email=identity.email,
                    timestamp=now,
                )

        verification = await VerificationCodeStore.issue(self.session, identity.email, now)
        await RegistrationSessionStore.open(self.session, identity, now)
        record_audit_event(
            self.session,
            AuditAction.QR_SCANNED,
            account_id=account.id if account else None,
            identity_ref=identity.ref,
            email=identity.email,
            details={"reregistration": account is not None},
            timestamp=now,
        )

        notification = await self._dispatch_code(identity.email, verification.code, identity.name)
        logger.info(f"QR scan accepted for identity {identity.ref}, verification code issued")

        return ScanEntryResponse(
            data=IdentityEcho(
                email=identity.email,
                name=identity.name,
                username=identity.username,
                next_step=NextStep.EMAIL_VERIFICATION,
            ),
            notification=notification,
        )

    async def verify_code(self, email: str, code: str) -> NextStepResponse:
        """Consume an emailed verification code.

        A wrong or expired code counts an attempt against every pending code of
        the email; the counter is committed even though the call fails.
        """
        now = self.clock()
        verification = await VerificationCodeStore.find_valid(self.session, email, code, now)

        if verification is None:
            await VerificationCodeStore.record_failed_attempt(self.session, email)
            await self.session.commit()
            logger.warning(f"Invalid verification code for {email}")
            raise InvalidOrExpiredCode()

        if verification.attempts >= verification.max_attempts:
            logger.warning(f"Verification attempts exhausted for {email}")
            raise TooManyAttempts()

        if not await VerificationCodeStore.consume(self.session, verification, now):
            raise InvalidOrExpiredCode()
        await RegistrationSessionStore.mark_email_verified(self.session, email, now)

        record_audit_event(self.session, AuditAction.CODE_VERIFIED, email=email, timestamp=now)
        logger.info(f"Email verified: {email}")
        return NextStepResponse(data=NextStepData(next_step=NextStep.PASSWORD_VERIFICATION))

    async def resend_code(self, email: str) -> ResendCodeResponse:
        """Issue and send a fresh code for an open registration session."""
        now = self.clock()
        registration = await RegistrationSessionStore.find_active(self.session, email, now)
        if registration is None:
            raise SessionExpired()

        verification = await VerificationCodeStore.issue(self.session, email, now)
        record_audit_event(
            self.session,
            AuditAction.CODE_ISSUED,
            identity_ref=registration.identity_ref,
            email=email,
            timestamp=now,
        )
        notification = await self._dispatch_code(email, verification.code, registration.name)
        logger.info(f"Verification code re-issued for {email}")
        return ResendCodeResponse(notification=notification)

    async def verify_legacy_password(self, email: str, password: str) -> VerifyLegacyPasswordResponse:
        """Check the ERP password of the identity behind an open registration session.

        A pure gate: nothing is persisted.
        """
        now = self.clock()
        registration = await RegistrationSessionStore.find_active(self.session, email, now)
        if registration is None:
            raise SessionExpired()

        if not await self._call_gateway(self.gateway.verify_password(registration.identity_ref, password)):
            logger.warning(f"ERP password rejected during registration for {email}")
            raise InvalidCredentials()

        return VerifyLegacyPasswordResponse()

    async def complete_registration(
        self, email: str, new_password: str, confirm_password: str
    ) -> CompleteRegistrationResponse:
        """Set the mobile password and claim the account.

        Only a registration session whose emailed code was verified can
        complete. The session is consumed first (compare-and-set), so two
        concurrent completions cannot both register.
        """
        if new_password != confirm_password:
            raise PasswordMismatch()

        now = self.clock()
        registration = await RegistrationSessionStore.find_active(self.session, email, now)
        if registration is None:
            raise SessionExpired()
        if registration.email_verified_at is None:
            logger.warning(f"Registration completion before email verification for {email}")
            raise EmailNotVerified()
        if not await RegistrationSessionStore.consume(self.session, registration, now):
            raise SessionExpired()

        hashed_password = Account.hash_password(new_password)
        account = await AccountService.upsert_registered(self.session, registration, hashed_password, now)
        if account is None:
            logger.warning(f"Registration raced for claimed identity {registration.identity_ref}")
            raise AlreadyRegistered(registration.username, registration.email)

        record_audit_event(
            self.session,
            AuditAction.REGISTRATION_COMPLETED,
            account_id=account.id,
            identity_ref=account.identity_ref,
            email=account.email,
            timestamp=now,
        )
        logger.info(f"Registration completed for account {account.id} ({account.username})")

        return CompleteRegistrationResponse(
            data=RegisteredAccount(
                user_id=account.id,
                username=account.username,
                email=account.email,
                name=account.name,
            )
        )

    # Login

    async def login(self, username: str, password: str, device_info: DeviceInfo | None = None) -> TokenBundle:
        """Password login.

        Unknown usernames and wrong passwords both raise InvalidCredentials.
        """
        now = self.clock()
        account = await AccountService.get_login_account(self.session, username)
        if account is None:
            logger.warning(f"Login attempt for unknown or unregistered username: {username}")
            raise InvalidCredentials()

        if not await self._check_login_password(account, password):
            logger.warning(f"Invalid password for username: {username}")
            raise InvalidCredentials()

        account.last_login_at = now
        account.last_password_check = now
        account.is_logged_out = False
        account.requires_reauth = False

        bundle = await TokenService.issue_tokens(self.session, account, device_info, now)
        bundle.device = await DeviceRegistryService.record_device_usage(self.session, account.id, device_info, now)

        record_audit_event(
            self.session,
            AuditAction.LOGIN,
            account_id=account.id,
            device_id=device_info.device_id if device_info else None,
            details={"sessionId": bundle.session.session_id},
            timestamp=now,
        )
        logger.info(f"User logged in: {account.username}")
        return bundle

    async def quick_login(self, account_id: UUID, device_info: DeviceInfo | None = None) -> TokenBundle:
        """Passwordless re-entry for a saved account.

        Needs a session inside its quick-login window and a password login less
        than ``reauth_window_hours`` ago (exactly the window is too old).
        Always mints new tokens on a new session.
        """
        now = self.clock()
        account = await AccountService.get_account(self.session, account_id)
        if account is None:
            raise AccountNotFound()
        if not account.is_active or not account.is_registered:
            raise AccountInactive(account.username, account.email)

        quick_session = await TokenService.find_quick_login_session(self.session, account.id, now)
        if quick_session is None:
            if account.is_logged_out:
                logger.info(f"Quick login after logout refused for {account.username}")
                raise SessionExpiredAfterLogout(account.username, account.email)
            raise NoActiveSession(account.username, account.email)

        if device_info is not None and device_info.device_id:
            binding = await DeviceRegistryService.get_binding(self.session, account.id, device_info.device_id)
            if binding is not None and binding.is_active and not binding.quick_login_enabled:
                logger.info(f"Quick login disabled on device {device_info.device_id} for {account.username}")
                raise NoActiveSession(account.username, account.email)

        if account.last_login_at is None or now - account.last_login_at >= settings.reauth_window:
            account.requires_reauth = True
            record_audit_event(self.session, AuditAction.REAUTH_REQUIRED, account_id=account.id, timestamp=now)
            await self.session.commit()
            logger.info(f"Re-authentication required for {account.username}")
            raise ReauthRequired(account.username, account.email)

        account.requires_reauth = False
        account.last_login_at = now
        account.is_active = True

        bundle = await TokenService.issue_tokens(self.session, account, device_info, now)
        bundle.device = await DeviceRegistryService.record_device_usage(self.session, account.id, device_info, now)

        record_audit_event(
            self.session,
            AuditAction.QUICK_LOGIN,
            account_id=account.id,
            device_id=device_info.device_id if device_info else None,
            details={"sessionId": bundle.session.session_id},
            timestamp=now,
        )
        logger.info(f"Quick login: {account.username}")
        return bundle

    async def refresh(self, refresh_token: str) -> TokenBundle:
        now = self.clock()
        bundle = await TokenService.refresh(self.session, refresh_token, now)
        record_audit_event(
            self.session,
            AuditAction.TOKENS_REFRESHED,
            account_id=bundle.user.id,
            details={"sessionId": bundle.session.session_id},
            timestamp=now,
        )
        return bundle

    async def logout(self, account_id: UUID, session_id: str | None = None) -> LogoutResponse:
        """Log an account out everywhere.

        Marking the account logged out is the state transition; revoking its
        sessions and tokens and dropping its device bindings are cleanups, each
        in its own SAVEPOINT so one failing does not undo the other. Safe to
        call repeatedly.

        Args:
            account_id: Account to log out
            session_id: Restrict token revocation to one session

        Returns:
            LogoutResponse, always successful

        """
        now = self.clock()
        account = await AccountService.get_account(self.session, account_id)
        if account is not None:
            await AccountService.mark_logged_out(self.session, account, now)

        sessions_deactivated = tokens_deactivated = 0
        try:
            async with self.session.begin_nested():
                sessions_deactivated, tokens_deactivated = await TokenService.deactivate_for_account(
                    self.session, account_id, now, session_id=session_id
                )
            token_cleanup = SideEffectResult.ok(f"{sessions_deactivated} sessions, {tokens_deactivated} tokens")
        except SQLAlchemyError as exc:
            logger.error(f"Session cleanup failed on logout of {account_id}: {exc}", exc_info=True)
            token_cleanup = SideEffectResult.failed("session cleanup failed")

        try:
            async with self.session.begin_nested():
                removed = await DeviceRegistryService.remove_account_everywhere(self.session, account_id, now)
            device_cleanup = SideEffectResult.ok(f"{removed} device bindings removed")
        except SQLAlchemyError as exc:
            logger.error(f"Device cleanup failed on logout of {account_id}: {exc}", exc_info=True)
            device_cleanup = SideEffectResult.failed("device cleanup failed")

        record_audit_event(
            self.session,
            AuditAction.LOGOUT,
            account_id=account_id,
            details={"sessions": sessions_deactivated, "refreshTokens": tokens_deactivated},
            timestamp=now,
        )
        logger.info(f"Account {account_id} logged out")

        return LogoutResponse(
            sessions_deactivated=sessions_deactivated,
            refresh_tokens_deactivated=tokens_deactivated,
            token_cleanup=token_cleanup,
            device_cleanup=device_cleanup,
        )

    # Recovery and account switching

    async def recover_session(self, email: str) -> RecoverSessionResponse:
        """Tell a client whose quick login failed ambiguously what to do next.

        Repairs the active and registered flags of a known account.
        """
        now = self.clock()
        account = await AccountService.get_by_email(self.session, email)
        if account is None:
            return RecoverSessionResponse(action=RecoveryAction.QR_REGISTRATION_REQUIRED)

        repaired = not account.is_active or not account.is_registered
        if repaired:
            logger.warning(f"Repairing flags of account {account.id} during session recovery")
            account.is_active = True
            account.is_registered = True
            account.updated_at = now

        if await TokenService.has_active_session(self.session, account.id):
            action = RecoveryAction.RETRY_QUICK_LOGIN
        else:
            action = RecoveryAction.PASSWORD_LOGIN_REQUIRED

        record_audit_event(
            self.session,
            AuditAction.SESSION_RECOVERED,
            account_id=account.id,
            email=account.email,
            details={"action": action.value, "repaired": repaired},
            timestamp=now,
        )
        return RecoverSessionResponse(action=action, repaired=repaired)

    async def list_saved_accounts(self, device_id: str) -> list[SavedAccountSummary]:
        """Registered accounts saved on a device, most recently used first."""
        now = self.clock()
        summaries = []
        for binding, account in await DeviceRegistryService.list_accounts_for_device(self.session, device_id):
            if not account.is_registered:
                continue
            has_quick_access = binding.quick_login_enabled and await TokenService.has_quick_access(
                self.session, account.id, now
            )
            summaries.append(
                SavedAccountSummary(
                    id=account.id,
                    username=account.username,
                    email=account.email,
                    name=account.name,
                    has_quick_access=has_quick_access,
                    last_login_at=account.last_login_at,
                )
            )
        return summaries
