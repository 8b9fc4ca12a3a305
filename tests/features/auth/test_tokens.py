"""Tests for the session and token manager."""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from src.features.account.models import Account
from src.features.auth.exceptions import InvalidRefreshToken, Unauthenticated
from src.features.auth.jwt_utils import InvalidTokenError, create_access_token, decode_token, verify_token_type
from src.features.auth.models import RefreshToken, UserSession
from src.features.auth.tokens import TokenService
from src.features.device.schemas import DeviceInfo


@pytest.fixture
def make_account(session):
    counter = 0

    async def _factory(**overrides) -> Account:
        nonlocal counter
        counter += 1
        fields = {
            "identity_ref": f"ref-{counter}",
            "username": f"worker{counter}",
            "email": f"worker{counter}@acme-logistics.com",
            "name": f"Worker {counter}",
            "is_registered": True,
            "email_verified": True,
            "password_verified": True,
        }
        fields.update(overrides)
        account = Account(**fields)
        session.add(account)
        await session.commit()
        return account

    return _factory


class TestIssueTokens:
    async def test_claims_and_session(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, DeviceInfo(device_id="d-1"), clock.now)

        payload = decode_token(bundle.tokens.access_token, clock.now)
        assert payload["sub"] == str(account.id)
        assert payload["username"] == account.username
        assert payload["email"] == account.email
        assert payload["sessionId"] == bundle.session.session_id
        assert verify_token_type(payload, "access")
        assert verify_token_type(decode_token(bundle.tokens.refresh_token, clock.now), "refresh")

        stored = await TokenService.get_session(session, bundle.session.session_id)
        assert stored.account_id == account.id
        assert stored.device_id == "d-1"
        assert stored.device_info["deviceId"] == "d-1"
        assert stored.access_token == bundle.tokens.access_token
        assert stored.expires_at == clock.now + timedelta(hours=24)
        assert stored.quick_login_expires_at == clock.now + timedelta(days=30)

    async def test_each_issuance_is_a_new_session(self, session, make_account, clock):
        account = await make_account()
        first = await TokenService.issue_tokens(session, account, None, clock.now)
        second = await TokenService.issue_tokens(session, account, None, clock.now)

        assert first.session.session_id != second.session.session_id
        assert first.tokens.access_token != second.tokens.access_token
        sessions = (await session.execute(select(UserSession))).scalars().all()
        assert len(sessions) == 2

    async def test_existing_session_is_kept(self, session, make_account, clock):
        account = await make_account()
        first = await TokenService.issue_tokens(session, account, None, clock.now)
        again = await TokenService.issue_tokens(
            session, account, None, clock.now, existing_session_id=first.session.session_id
        )

        assert again.session.session_id == first.session.session_id
        sessions = (await session.execute(select(UserSession))).scalars().all()
        assert len(sessions) == 1
        assert sessions[0].access_token == again.tokens.access_token


class TestRefresh:
    async def test_rotation_marks_old_row(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)

        await TokenService.refresh(session, bundle.tokens.refresh_token, clock.now)

        old = (
            await session.execute(select(RefreshToken).where(RefreshToken.token == bundle.tokens.refresh_token))
        ).scalar_one()
        assert old.is_active is False
        assert old.rotated is True
        assert old.deactivated_at == clock.now

    async def test_expired_row_is_rejected(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)

        with pytest.raises(InvalidRefreshToken):
            await TokenService.refresh(session, bundle.tokens.refresh_token, clock.now + timedelta(days=7))

    async def test_inactive_account_is_rejected(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)
        account.is_active = False
        await session.commit()

        with pytest.raises(InvalidRefreshToken):
            await TokenService.refresh(session, bundle.tokens.refresh_token, clock.now)


class TestValidateAccessToken:
    async def test_valid_token_resolves_principal(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)

        later = clock.now + timedelta(minutes=10)
        principal = await TokenService.validate_access_token(session, bundle.tokens.access_token, later)

        assert principal.account_id == account.id
        assert principal.session_id == bundle.session.session_id
        stored = await TokenService.get_session(session, bundle.session.session_id)
        assert stored.last_activity_at == later

    async def test_session_past_expiry(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)

        with pytest.raises(Unauthenticated):
            await TokenService.validate_access_token(
                session, bundle.tokens.access_token, clock.now + timedelta(hours=24)
            )

    async def test_refresh_token_is_not_accepted(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)

        with pytest.raises(Unauthenticated):
            await TokenService.validate_access_token(session, bundle.tokens.refresh_token, clock.now)

    async def test_token_without_session_claim(self, session, make_account, clock):
        account = await make_account()
        token = create_access_token({"sub": str(account.id)}, clock.now)

        with pytest.raises(Unauthenticated):
            await TokenService.validate_access_token(session, token, clock.now)

    async def test_unknown_session(self, session, clock):
        token = create_access_token({"sub": str(uuid4()), "sessionId": str(uuid4())}, clock.now)

        with pytest.raises(Unauthenticated):
            await TokenService.validate_access_token(session, token, clock.now)

    async def test_deactivated_session(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)
        await TokenService.deactivate_for_account(session, account.id, clock.now)

        with pytest.raises(Unauthenticated):
            await TokenService.validate_access_token(session, bundle.tokens.access_token, clock.now)

    async def test_inactive_account(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)
        account.is_active = False
        await session.commit()

        with pytest.raises(Unauthenticated):
            await TokenService.validate_access_token(session, bundle.tokens.access_token, clock.now)


class TestSessionQueries:
    async def test_deactivate_counts_only_active_rows(self, session, make_account, clock):
        account = await make_account()
        other = await make_account()
        await TokenService.issue_tokens(session, account, None, clock.now)
        await TokenService.issue_tokens(session, account, None, clock.now)
        await TokenService.issue_tokens(session, other, None, clock.now)

        assert await TokenService.deactivate_for_account(session, account.id, clock.now) == (2, 2)
        assert await TokenService.deactivate_for_account(session, account.id, clock.now) == (0, 0)
        assert await TokenService.has_active_session(session, other.id) is True

    async def test_quick_login_window_boundary(self, session, make_account, clock):
        account = await make_account()
        await TokenService.issue_tokens(session, account, None, clock.now)

        just_inside = clock.now + timedelta(days=30) - timedelta(seconds=1)
        assert await TokenService.has_quick_access(session, account.id, just_inside) is True
        assert await TokenService.has_quick_access(session, account.id, clock.now + timedelta(days=30)) is False

    async def test_quick_login_disabled_session(self, session, make_account, clock):
        account = await make_account()
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)
        stored = await TokenService.get_session(session, bundle.session.session_id)
        stored.quick_login_enabled = False
        await session.flush()

        assert await TokenService.find_quick_login_session(session, account.id, clock.now) is None
        assert await TokenService.has_active_session(session, account.id) is True


class TestDecodeToken:
    async def test_token_issued_ahead_of_wall_clock(self, session, make_account, clock):
        account = await make_account()
        clock.advance(hours=6)
        bundle = await TokenService.issue_tokens(session, account, None, clock.now)

        payload = decode_token(bundle.tokens.access_token, clock.now)
        assert payload["sessionId"] == bundle.session.session_id

        rotated = await TokenService.refresh(session, bundle.tokens.refresh_token, clock.now)
        principal = await TokenService.validate_access_token(session, rotated.tokens.access_token, clock.now)
        assert principal.account_id == account.id

    async def test_token_issued_in_the_past(self, session, make_account, clock):
        account = await make_account()
        issued_at = clock.now - timedelta(days=3)
        bundle = await TokenService.issue_tokens(session, account, None, issued_at)

        principal = await TokenService.validate_access_token(
            session, bundle.tokens.access_token, issued_at + timedelta(hours=1)
        )
        assert principal.account_id == account.id

    def test_expiry_follows_the_given_time(self, clock):
        token = create_access_token({"sub": str(uuid4())}, clock.now, timedelta(minutes=5))

        assert decode_token(token, clock.now + timedelta(minutes=4))["sub"]
        with pytest.raises(InvalidTokenError):
            decode_token(token, clock.now + timedelta(minutes=5))
