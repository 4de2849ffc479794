# ignite/accounts/password_reset.py
"""
Enumeration-safe password reset.

Flow:
1. request(email)  → code emailed if the account exists (generic reply)
2. verify(email, code) → short-lived reset-session token
3. reset(token, new_password, confirm_password) → credential replaced,
   token_version bumped (all sessions and the reset token are revoked)
Side doors: resend(email), cancel(email).

Lockout: five wrong codes lock the account's reset challenge. Cancel does
not clear the lock; it lifts at the next local midnight (APP_TIMEZONE),
when a new request issues a fresh challenge.

Anti-enumeration:
- request, resend and cancel always return the same payload, whether the
  email is unknown, the account is inactive, the send was rate limited,
  or the store failed. The enumeration_safe decorator is the single place
  that normalizes those responses.
- verify for an unknown email fails exactly like a wrong code.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime
from typing import Callable, Optional

from ignite.privacy_utils import mask_email, hash_user_id
from ignite.accounts.auth import TokenIssuer, hash_password
from ignite.accounts.errors import ErrorCode, OtpError, TokenError, ValidationError
from ignite.accounts.models import (
    ChallengePurpose,
    ProfileRecord,
    normalize_email,
    validate_password_strength,
    utcnow,
)
from ignite.accounts.otp import OTPEngine, OtpVerifyResult, ResendStatus
from ignite.accounts.store import CredentialStore

log = logging.getLogger("ignite.password_reset")

GENERIC_RESET_MESSAGE = "If this email exists, a code has been sent."
CANCEL_MESSAGE = "Password reset cancelled."
RESET_DONE_MESSAGE = "Password has been reset."

VERIFY_ERRORS = {
    OtpVerifyResult.INVALID: (ErrorCode.OTP_INVALID, "Invalid or expired code"),
    OtpVerifyResult.EXPIRED: (ErrorCode.OTP_EXPIRED, "Invalid or expired code"),
    OtpVerifyResult.LOCKED: (ErrorCode.OTP_LOCKED, "Too many attempts. Please try again later"),
}


def enumeration_safe(message: str, log_tag: str) -> Callable[[Callable[..., None]], Callable[..., dict]]:
    """
    Make an operation's observable result independent of account state.

    The wrapped call's return value is discarded and any exception is
    logged under `log_tag`; the caller always receives
    {"success": True, "message": message}.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                func(*args, **kwargs)
            except Exception:
                log.exception("%s.error", log_tag)
            return {"success": True, "message": message}
        return wrapper
    return decorator


class PasswordResetOrchestrator:
    """Drives RESET_PASSWORD challenges for active profiles."""

    def __init__(
        self,
        store: CredentialStore,
        otp: OTPEngine,
        tokens: TokenIssuer,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.clock = clock or utcnow

    def _active_profile(self, email: str) -> Optional[ProfileRecord]:
        profile = self.store.find_profile_by_email(normalize_email(email))
        if profile is None or not profile.is_active:
            return None
        return profile

    def _send_code(self, email: str, log_tag: str) -> None:
        profile = self._active_profile(email)
        if profile is None:
            log.info("%s.no_account email=%s", log_tag, mask_email(email))
            return

        now = self.clock()
        challenge = self.store.get_challenge(profile.id, ChallengePurpose.RESET_PASSWORD)
        if challenge is not None and challenge.is_locked and not self.otp.same_local_day(challenge.locked_at, now):
            # Reset lockouts lift at the next local midnight
            log.info("%s.lock_lifted profile=%s", log_tag, hash_user_id(profile.id))
            challenge = None

        status = self.otp.check_send(challenge, now)
        if status != ResendStatus.OK:
            log.info(
                "%s.rate_limited profile=%s status=%s",
                log_tag, hash_user_id(profile.id), status.value,
            )
            return

        if challenge is None:
            self.otp.issue(profile.id, ChallengePurpose.RESET_PASSWORD, profile.email, profile.full_name)
        else:
            self.otp.resend(profile.id, ChallengePurpose.RESET_PASSWORD, profile.email, profile.full_name)
        log.info("%s.sent profile=%s", log_tag, hash_user_id(profile.id))

    @enumeration_safe(GENERIC_RESET_MESSAGE, "password_reset.request")
    def request(self, email: str):
        """Email a reset code if an active account owns this address."""
        self._send_code(email, "password_reset.request")

    @enumeration_safe(GENERIC_RESET_MESSAGE, "password_reset.resend")
    def resend(self, email: str):
        self._send_code(email, "password_reset.resend")

    @enumeration_safe(CANCEL_MESSAGE, "password_reset.cancel")
    def cancel(self, email: str):
        """
        Invalidate any outstanding reset code.

        The challenge row is kept so its lock and daily count still apply
        to the next request.
        """
        profile = self._active_profile(email)
        if profile is None:
            return
        if self.otp.revoke(profile.id, ChallengePurpose.RESET_PASSWORD):
            log.info("password_reset.cancel.revoked profile=%s", hash_user_id(profile.id))

    def verify(self, email: str, code: str) -> dict:
        """
        Exchange a reset code for a reset-session token.

        Returns:
            {"reset_session_token": str, "expires_in": seconds}

        Raises:
            OtpError: OTP_INVALID / OTP_EXPIRED (400) or OTP_LOCKED (423).
        """
        profile = self._active_profile(email)
        if profile is None:
            log.info("password_reset.verify.no_account email=%s", mask_email(email))
            raise OtpError(*VERIFY_ERRORS[OtpVerifyResult.INVALID])

        result = self.otp.verify(profile.id, ChallengePurpose.RESET_PASSWORD, code)
        if result != OtpVerifyResult.OK:
            raise OtpError(*VERIFY_ERRORS[result])

        token, expires_in = self.tokens.issue_reset_session_token(profile.id, profile.token_version)
        log.info("password_reset.verify.ok profile=%s", hash_user_id(profile.id))
        return {"reset_session_token": token, "expires_in": expires_in}

    def reset(self, token: str, new_password: str, confirm_password: str) -> dict:
        """
        Replace the password of the profile named by a reset-session token.

        Raises:
            ValidationError: passwords differ or break the length rules.
            TokenError(RESET_SESSION_INVALID): bad, expired or used token.
        """
        if new_password != confirm_password:
            raise ValidationError(ErrorCode.VALIDATION_ERROR, "Passwords do not match")
        try:
            validate_password_strength(new_password)
        except ValueError as e:
            raise ValidationError(ErrorCode.VALIDATION_ERROR, str(e))

        profile_id, version = self.tokens.verify_reset_session_token(token)
        profile = self.store.get_profile(profile_id)
        if profile is None or not profile.is_active:
            raise TokenError(ErrorCode.RESET_SESSION_INVALID)
        if profile.token_version != version:
            log.info("password_reset.reset.stale_token profile=%s", hash_user_id(profile.id))
            raise TokenError(ErrorCode.RESET_SESSION_INVALID)

        profile.password_hash = hash_password(new_password)
        profile.token_version += 1
        profile.updated_at = self.clock()
        self.store.update_profile(profile)
        self.otp.delete(profile.id, ChallengePurpose.RESET_PASSWORD)
        log.info("password_reset.reset.ok profile=%s", hash_user_id(profile.id))
        return {"success": True, "message": RESET_DONE_MESSAGE}
