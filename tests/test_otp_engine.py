# tests/test_otp_engine.py
"""
OTP engine tests.

Tests for:
- Issue persists a hashed challenge and dispatches the code
- Verify ordering (missing, expired, locked, mismatch, match)
- Lockout after 5 wrong codes
- 10 minute expiry
- 60 second cooldown and 5-per-day resend cap (Australia/Sydney days)
- Revoke clears the code but keeps counters and lock
- Notifier failures leave the challenge usable

Run with: pytest tests/test_otp_engine.py -v
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from conftest import SYDNEY, wrong_code

from ignite.accounts.models import ChallengePurpose
from ignite.accounts.otp import (
    OTPEngine,
    OTPService,
    OtpVerifyResult,
    ResendStatus,
    hash_otp,
)

pytestmark = pytest.mark.unit

OWNER = "signup-1"
EMAIL = "ada@example.com"
SIGNUP = ChallengePurpose.SIGNUP


@pytest.fixture
def engine(store, notifier, clock):
    return OTPEngine(store, notifier, clock=clock, timezone=SYDNEY)


def _issue(engine, notifier):
    engine.issue(OWNER, SIGNUP, EMAIL, "Ada Lovelace")
    return notifier.last_code(EMAIL)


# ============================================================
# Issue
# ============================================================

class TestIssue:

    def test_issue_persists_hash_and_sends(self, engine, store, notifier, clock):
        code = _issue(engine, notifier)

        challenge = store.get_challenge(OWNER, SIGNUP)
        assert challenge is not None
        assert challenge.otp_hash == hash_otp(code)
        assert challenge.attempts == 0
        assert challenge.resend_count == 0
        assert challenge.last_sent_at == clock()
        assert challenge.locked_at is None

        assert len(notifier.outbox) == 1
        assert notifier.outbox[0].subject == "Your Ignite verification code"

    def test_reissue_replaces_challenge(self, engine, store, notifier):
        first = _issue(engine, notifier)
        for _ in range(5):
            engine.verify(OWNER, SIGNUP, wrong_code(first))
        assert store.get_challenge(OWNER, SIGNUP).is_locked

        second = _issue(engine, notifier)
        challenge = store.get_challenge(OWNER, SIGNUP)
        assert challenge.attempts == 0
        assert not challenge.is_locked
        assert engine.verify(OWNER, SIGNUP, second) == OtpVerifyResult.OK

    def test_reset_purpose_uses_reset_subject(self, engine, notifier):
        engine.issue("profile-1", ChallengePurpose.RESET_PASSWORD, EMAIL)
        assert notifier.outbox[-1].subject == "Your Ignite password reset code"

    def test_purposes_are_independent(self, engine, store, notifier):
        _issue(engine, notifier)
        engine.issue(OWNER, ChallengePurpose.RESET_PASSWORD, EMAIL)

        assert store.get_challenge(OWNER, SIGNUP) is not None
        assert store.get_challenge(OWNER, ChallengePurpose.RESET_PASSWORD) is not None


# ============================================================
# Verify
# ============================================================

class TestVerify:

    def test_missing_challenge_is_invalid(self, engine):
        assert engine.verify(OWNER, SIGNUP, "123456") == OtpVerifyResult.INVALID

    def test_correct_code_consumes_challenge(self, engine, store, notifier):
        code = _issue(engine, notifier)

        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.OK
        assert store.get_challenge(OWNER, SIGNUP) is None
        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.INVALID

    def test_wrong_code_counts_attempt(self, engine, store, notifier):
        code = _issue(engine, notifier)

        assert engine.verify(OWNER, SIGNUP, wrong_code(code)) == OtpVerifyResult.INVALID
        assert store.get_challenge(OWNER, SIGNUP).attempts == 1

    def test_fifth_miss_locks(self, engine, store, notifier):
        code = _issue(engine, notifier)

        for attempt in range(1, 6):
            assert engine.verify(OWNER, SIGNUP, wrong_code(code)) == OtpVerifyResult.INVALID
            assert store.get_challenge(OWNER, SIGNUP).attempts == attempt

        assert store.get_challenge(OWNER, SIGNUP).is_locked
        # Even the right code is refused once locked
        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.LOCKED

    def test_fourth_miss_does_not_lock(self, engine, store, notifier):
        code = _issue(engine, notifier)
        for _ in range(4):
            engine.verify(OWNER, SIGNUP, wrong_code(code))

        assert not store.get_challenge(OWNER, SIGNUP).is_locked
        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.OK

    def test_valid_until_ten_minutes(self, engine, notifier, clock):
        code = _issue(engine, notifier)
        clock.advance(minutes=10)
        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.OK

    def test_expired_after_ten_minutes(self, engine, store, notifier, clock):
        code = _issue(engine, notifier)
        clock.advance(minutes=10, seconds=1)

        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.EXPIRED
        # Expired challenges are left in place (no attempt counted)
        assert store.get_challenge(OWNER, SIGNUP).attempts == 0

    def test_expired_reported_before_locked(self, engine, notifier, clock):
        code = _issue(engine, notifier)
        for _ in range(5):
            engine.verify(OWNER, SIGNUP, wrong_code(code))
        clock.advance(minutes=11)

        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.EXPIRED


# ============================================================
# Resend
# ============================================================

class TestResend:

    def test_resend_without_challenge_issues(self, engine, store, notifier):
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)

        assert outcome.status == ResendStatus.SENT
        assert outcome.cooldown_seconds == 60
        assert outcome.remaining_today == 5
        assert store.get_challenge(OWNER, SIGNUP) is not None
        assert len(notifier.outbox) == 1

    def test_cooldown_blocks_until_sixty_seconds(self, engine, notifier, clock):
        _issue(engine, notifier)

        clock.advance(seconds=59)
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)
        assert outcome.status == ResendStatus.COOLDOWN
        assert outcome.cooldown_seconds == 1
        assert len(notifier.outbox) == 1

        clock.advance(seconds=1)
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)
        assert outcome.status == ResendStatus.SENT
        assert outcome.remaining_today == 4
        assert len(notifier.outbox) == 2

    def test_resend_rotates_code_and_resets_attempts(self, engine, store, notifier, clock):
        first = _issue(engine, notifier)
        engine.verify(OWNER, SIGNUP, wrong_code(first))

        clock.advance(seconds=61)
        engine.resend(OWNER, SIGNUP, EMAIL)
        second = notifier.last_code(EMAIL)

        challenge = store.get_challenge(OWNER, SIGNUP)
        assert challenge.attempts == 0
        assert challenge.expires_at == clock() + timedelta(minutes=10)
        if first != second:
            assert engine.verify(OWNER, SIGNUP, first) == OtpVerifyResult.INVALID
        assert engine.verify(OWNER, SIGNUP, second) == OtpVerifyResult.OK

    def test_resend_extends_expiry(self, engine, store, notifier, clock):
        _issue(engine, notifier)
        clock.advance(minutes=9)
        engine.resend(OWNER, SIGNUP, EMAIL)
        code = notifier.last_code(EMAIL)

        clock.advance(minutes=9)
        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.OK

    def test_daily_cap(self, engine, notifier, clock):
        _issue(engine, notifier)

        for remaining in (4, 3, 2, 1, 0):
            clock.advance(seconds=61)
            outcome = engine.resend(OWNER, SIGNUP, EMAIL)
            assert outcome.status == ResendStatus.SENT
            assert outcome.remaining_today == remaining

        clock.advance(seconds=61)
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)
        assert outcome.status == ResendStatus.RESEND_LIMIT
        assert outcome.remaining_today == 0
        assert len(notifier.outbox) == 6

    def test_cap_resets_next_local_day(self, engine, store, notifier, clock):
        _issue(engine, notifier)
        for _ in range(5):
            clock.advance(seconds=61)
            engine.resend(OWNER, SIGNUP, EMAIL)

        # 01:00 the next day in Sydney
        clock.set(datetime(2026, 3, 11, 1, 0, tzinfo=SYDNEY).astimezone(timezone.utc))
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)

        assert outcome.status == ResendStatus.SENT
        assert outcome.remaining_today == 4
        assert store.get_challenge(OWNER, SIGNUP).resend_count == 1

    def test_cap_follows_sydney_midnight_not_utc(self, engine, notifier, clock):
        # 23:30 Sydney (AEDT), 12:30 UTC
        clock.set(datetime(2026, 3, 10, 12, 30, tzinfo=timezone.utc))
        _issue(engine, notifier)
        for _ in range(5):
            clock.advance(seconds=61)
            engine.resend(OWNER, SIGNUP, EMAIL)

        clock.set(datetime(2026, 3, 10, 12, 50, tzinfo=timezone.utc))
        assert engine.resend(OWNER, SIGNUP, EMAIL).status == ResendStatus.RESEND_LIMIT

        # 00:01 Sydney on the 11th; still the 10th in UTC
        clock.set(datetime(2026, 3, 10, 13, 1, tzinfo=timezone.utc))
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)
        assert outcome.status == ResendStatus.SENT
        assert outcome.remaining_today == 4

    def test_locked_challenge_cannot_resend(self, engine, notifier, clock):
        code = _issue(engine, notifier)
        for _ in range(5):
            engine.verify(OWNER, SIGNUP, wrong_code(code))

        clock.advance(seconds=61)
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)
        assert outcome.status == ResendStatus.LOCKED
        assert len(notifier.outbox) == 1

    def test_refusal_changes_nothing(self, engine, store, notifier, clock):
        _issue(engine, notifier)
        before = store.get_challenge(OWNER, SIGNUP)

        clock.advance(seconds=10)
        engine.resend(OWNER, SIGNUP, EMAIL)

        assert store.get_challenge(OWNER, SIGNUP) == before

    def test_check_send_without_challenge(self, engine):
        assert engine.check_send(None) == ResendStatus.OK


# ============================================================
# Revoke
# ============================================================

class TestRevoke:

    def test_revoked_code_no_longer_verifies(self, engine, notifier, clock):
        code = _issue(engine, notifier)

        assert engine.revoke(OWNER, SIGNUP) is True
        clock.advance(seconds=1)

        assert engine.verify(OWNER, SIGNUP, code) == OtpVerifyResult.EXPIRED

    def test_keeps_counters_and_lock(self, engine, store, notifier, clock):
        code = _issue(engine, notifier)
        for _ in range(5):
            engine.verify(OWNER, SIGNUP, wrong_code(code))

        engine.revoke(OWNER, SIGNUP)

        challenge = store.get_challenge(OWNER, SIGNUP)
        assert challenge.is_locked
        assert challenge.attempts == 5
        assert challenge.last_sent_at == clock()
        clock.advance(seconds=61)
        assert engine.check_send(challenge) == ResendStatus.LOCKED

    def test_missing_challenge(self, engine):
        assert engine.revoke(OWNER, SIGNUP) is False


# ============================================================
# Notifier Failures
# ============================================================

class TestDispatchFailures:

    def test_exception_keeps_challenge(self, store, clock):
        failing = MagicMock(spec=OTPService)
        failing.send_otp.side_effect = RuntimeError("smtp down")
        failing.get_provider_name.return_value = "broken"
        engine = OTPEngine(store, failing, clock=clock, timezone=SYDNEY)

        challenge = engine.issue(OWNER, SIGNUP, EMAIL)

        assert failing.send_otp.called
        assert store.get_challenge(OWNER, SIGNUP) == challenge

    def test_false_return_keeps_challenge(self, store, clock):
        failing = MagicMock(spec=OTPService)
        failing.send_otp.return_value = False
        failing.get_provider_name.return_value = "broken"
        engine = OTPEngine(store, failing, clock=clock, timezone=SYDNEY)

        engine.issue(OWNER, SIGNUP, EMAIL)
        clock.advance(seconds=61)
        outcome = engine.resend(OWNER, SIGNUP, EMAIL)

        assert outcome.status == ResendStatus.SENT
        assert store.get_challenge(OWNER, SIGNUP).resend_count == 1

    def test_code_hash_saved_before_dispatch(self, store, clock):
        seen = {}

        def _send(email, otp, purpose, full_name=""):
            seen["stored"] = store.get_challenge(OWNER, SIGNUP)
            seen["otp"] = otp
            return True

        notifier = MagicMock(spec=OTPService)
        notifier.send_otp.side_effect = _send
        engine = OTPEngine(store, notifier, clock=clock, timezone=SYDNEY)

        engine.issue(OWNER, SIGNUP, EMAIL)
        assert seen["stored"] is not None
        assert seen["stored"].otp_hash == hash_otp(seen["otp"])
