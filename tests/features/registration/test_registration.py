"""Tests for the verification code and registration session stores."""

from datetime import timedelta

from sqlalchemy import select

from src.features.identity.schemas import LegacyIdentity
from src.features.registration.models import RegistrationSession, VerificationCode
from src.features.registration.service import (
    RegistrationSessionStore,
    VerificationCodeStore,
    generate_verification_code,
)

EMAIL = "dispatch@acme-logistics.com"


def _identity(ref: str = "300", email: str = EMAIL) -> LegacyIdentity:
    return LegacyIdentity(ref=ref, username=f"user{ref}", email=email, name="Dispatcher")


class TestGenerateVerificationCode:
    def test_six_digits_without_leading_zero(self):
        for _ in range(200):
            code = generate_verification_code()
            assert len(code) == 6
            assert code.isdigit()
            assert 100000 <= int(code) <= 999999


class TestVerificationCodeStore:
    async def test_issue_sets_expiry_and_attempt_budget(self, session, clock):
        code = await VerificationCodeStore.issue(session, EMAIL, clock.now)
        assert code.expires_at == clock.now + timedelta(minutes=15)
        assert code.max_attempts == 5
        assert code.attempts == 0
        assert code.is_used is False

    async def test_issue_invalidates_earlier_codes(self, session, clock):
        first = await VerificationCodeStore.issue(session, EMAIL, clock.now)
        second = await VerificationCodeStore.issue(session, EMAIL, clock.now)

        assert await VerificationCodeStore.find_valid(session, EMAIL, first.code, clock.now) in (None, second)
        assert await VerificationCodeStore.find_valid(session, EMAIL, second.code, clock.now) is second
        stored_first = await session.get(VerificationCode, first.id)
        assert stored_first.is_used is True

    async def test_codes_are_scoped_to_email(self, session, clock):
        code = await VerificationCodeStore.issue(session, EMAIL, clock.now)
        assert await VerificationCodeStore.find_valid(session, "other@acme-logistics.com", code.code, clock.now) is None

    async def test_expiry_is_exclusive(self, session, clock):
        code = await VerificationCodeStore.issue(session, EMAIL, clock.now)
        just_before = clock.now + timedelta(minutes=15) - timedelta(seconds=1)

        assert await VerificationCodeStore.find_valid(session, EMAIL, code.code, just_before) is code
        assert await VerificationCodeStore.find_valid(session, EMAIL, code.code, clock.now + timedelta(minutes=15)) is None

    async def test_consume_is_compare_and_set(self, session, clock):
        code = await VerificationCodeStore.issue(session, EMAIL, clock.now)

        assert await VerificationCodeStore.consume(session, code, clock.now) is True
        assert await VerificationCodeStore.consume(session, code, clock.now) is False
        assert code.is_used is True
        assert code.used_at == clock.now

    async def test_failed_attempts_count_against_pending_codes(self, session, clock):
        code = await VerificationCodeStore.issue(session, EMAIL, clock.now)

        await VerificationCodeStore.record_failed_attempt(session, EMAIL)
        await VerificationCodeStore.record_failed_attempt(session, EMAIL)
        await session.refresh(code)

        assert code.attempts == 2


class TestRegistrationSessionStore:
    async def test_open_sets_short_expiry(self, session, clock):
        registration = await RegistrationSessionStore.open(session, _identity(), clock.now)

        assert registration.expires_at == clock.now + timedelta(minutes=5)
        assert registration.identity_ref == "300"
        assert len(registration.token) >= 32

    async def test_reopen_closes_previous_session(self, session, clock):
        first = await RegistrationSessionStore.open(session, _identity(), clock.now)
        second = await RegistrationSessionStore.open(session, _identity(), clock.now + timedelta(seconds=1))

        active = await RegistrationSessionStore.find_active(session, EMAIL, clock.now + timedelta(seconds=1))
        assert active is second
        await session.refresh(first)
        assert first.is_used is True

    async def test_reopen_by_ref_closes_session_under_old_email(self, session, clock):
        old = await RegistrationSessionStore.open(session, _identity(email="old@acme-logistics.com"), clock.now)
        await RegistrationSessionStore.open(session, _identity(), clock.now)

        await session.refresh(old)
        assert old.is_used is True

    async def test_find_active_ignores_expired(self, session, clock):
        await RegistrationSessionStore.open(session, _identity(), clock.now)
        assert await RegistrationSessionStore.find_active(session, EMAIL, clock.now + timedelta(minutes=5)) is None

    async def test_consume_is_compare_and_set(self, session, clock):
        registration = await RegistrationSessionStore.open(session, _identity(), clock.now)

        assert await RegistrationSessionStore.consume(session, registration, clock.now) is True
        assert await RegistrationSessionStore.consume(session, registration, clock.now) is False
        rows = (await session.execute(select(RegistrationSession))).scalars().all()
        assert [row.is_used for row in rows] == [True]

    async def test_mark_email_verified_stamps_active_session(self, session, clock):
        registration = await RegistrationSessionStore.open(session, _identity(), clock.now)
        assert registration.email_verified_at is None

        marked = await RegistrationSessionStore.mark_email_verified(session, EMAIL, clock.now)

        assert marked is registration
        assert registration.email_verified_at == clock.now

    async def test_mark_email_verified_without_active_session(self, session, clock):
        await RegistrationSessionStore.open(session, _identity(), clock.now)
        later = clock.now + timedelta(minutes=5)

        assert await RegistrationSessionStore.mark_email_verified(session, EMAIL, later) is None
