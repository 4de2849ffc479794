# ignite/accounts/otp.py
"""
OTP engine and notification channel.

This module provides:
- Abstract notifier interface (OTPService base class)
- Stub implementation (logs the code, keeps an outbox, for development)
- Resend / SendGrid implementations over httpx
- OTP generation, hashing, and verification utilities
- OTPEngine: issue / verify / resend challenges with lockout, cooldown
  and daily resend cap

Security:
- OTP is 6 digits (000000-999999)
- OTP hashed with SHA-256 before storage (never store plaintext)
- TTL: 10 minutes from the last send
- Max attempts: 5 wrong codes lock the challenge
- Cooldown: 60s between sends
- Daily cap: 5 resends per calendar day (APP_TIMEZONE)
- Single-use: Challenge deleted after successful verification

Ordering:
- Challenge state is persisted before the code is handed to the notifier
- A failed dispatch is logged and leaves the challenge valid, so the user
  can simply request a resend
"""

from __future__ import annotations

import os
import hmac
import secrets
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from hashlib import sha256
from typing import Callable, List, Optional

import httpx

from ignite.db import get_app_timezone
from ignite.privacy_utils import mask_email, hash_user_id
from ignite.accounts.store import CredentialStore
from ignite.accounts.models import (
    Challenge,
    ChallengePurpose,
    OTP_TTL_MINUTES,
    OTP_MAX_ATTEMPTS,
    OTP_COOLDOWN_SECONDS,
    OTP_DAILY_RESEND_CAP,
    utcnow,
)

log = logging.getLogger("ignite.otp")

EMAIL_SUBJECTS = {
    ChallengePurpose.SIGNUP: "Your Ignite verification code",
    ChallengePurpose.RESET_PASSWORD: "Your Ignite password reset code",
}

DEFAULT_FROM_EMAIL = "noreply@ignite.app"

# ============================================================
# OTP Utilities
# ============================================================

def generate_otp() -> str:
    """
    Generate a secure 6-digit OTP.

    Returns:
        String of 6 digits (e.g., "123456", "000001").

    Security:
        Uses secrets module for cryptographically secure random numbers.
    """
    return f"{secrets.randbelow(1000000):06d}"


def hash_otp(otp: str) -> str:
    """
    Hash OTP with SHA-256.

    Args:
        otp: 6-digit OTP string.

    Returns:
        Hexadecimal SHA-256 hash.
    """
    return sha256(otp.encode("utf-8")).hexdigest()


def verify_otp_hash(otp: str, otp_hash: str) -> bool:
    """
    Verify OTP against stored hash (constant-time comparison).

    Args:
        otp: User-provided OTP.
        otp_hash: Stored SHA-256 hash.

    Returns:
        True if OTP matches hash, False otherwise.
    """
    return hmac.compare_digest(hash_otp(otp), otp_hash)


def render_otp_email(full_name: str, otp: str, purpose: ChallengePurpose = ChallengePurpose.SIGNUP) -> str:
    """Render the HTML body for an OTP email."""
    heading = "Ignite Verification" if purpose == ChallengePurpose.SIGNUP else "Ignite Password Reset"
    greeting = f"Hi {full_name}," if full_name else "Hi,"
    return f"""
        <div style="font-family: sans-serif; max-width: 400px; margin: 0 auto;">
            <h2 style="color: #333;">{heading}</h2>
            <p>{greeting}</p>
            <p>Your code is:</p>
            <div style="font-size: 32px; font-weight: bold; letter-spacing: 4px;
                        padding: 20px; background: #f5f5f5; text-align: center;
                        border-radius: 8px; margin: 20px 0;">
                {otp}
            </div>
            <p style="color: #666; font-size: 14px;">
                This code expires in {OTP_TTL_MINUTES} minutes.
            </p>
            <p style="color: #999; font-size: 12px;">
                If you didn't request this code, please ignore this email.
            </p>
        </div>
    """


# ============================================================
# Abstract OTP Service
# ============================================================

class OTPService(ABC):
    """
    Abstract base class for OTP delivery services.

    Implementations:
    - StubOTPService: Logs to console (development)
    - ResendOTPService: Sends via Resend API (production)
    - SendGridOTPService: Sends via SendGrid API (production)
    """

    @abstractmethod
    def send_otp(self, email: str, otp: str, purpose: ChallengePurpose, full_name: str = "") -> bool:
        """
        Send OTP to email address.

        Args:
            email: Recipient email address.
            otp: 6-digit OTP to send.
            purpose: Selects the subject line.
            full_name: Used in the greeting.

        Returns:
            True if sent successfully, False otherwise.
        """
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return provider name for logging."""
        pass


# ============================================================
# Stub Implementation (Development)
# ============================================================

@dataclass
class SentOtp:
    email: str
    otp: str
    purpose: ChallengePurpose
    subject: str


class StubOTPService(OTPService):
    """
    Stub OTP service that logs instead of sending.

    Every dispatch is appended to `outbox` so development tooling and
    tests can read the most recent code. Never use in production.
    """

    def __init__(self):
        self.outbox: List[SentOtp] = []

    def send_otp(self, email: str, otp: str, purpose: ChallengePurpose, full_name: str = "") -> bool:
        """Log OTP instead of sending email."""
        self.outbox.append(SentOtp(email=email, otp=otp, purpose=purpose, subject=EMAIL_SUBJECTS[purpose]))
        log.info(
            "[STUB OTP] Would send %s code to %s: %s (expires in %d minutes)",
            purpose.value,
            mask_email(email),
            otp,
            OTP_TTL_MINUTES,
        )
        return True

    def get_provider_name(self) -> str:
        return "stub"

    def last_code(self, email: Optional[str] = None) -> Optional[str]:
        """Most recent code, optionally filtered by recipient."""
        for sent in reversed(self.outbox):
            if email is None or sent.email == email:
                return sent.otp
        return None


# ============================================================
# Resend Implementation (Production)
# ============================================================

class ResendOTPService(OTPService):
    """
    OTP service using Resend API.

    Requires:
    - OTP_API_KEY: Resend API key
    - OTP_FROM_EMAIL: Sender email (optional)
    """

    url = "https://api.resend.com/emails"

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else os.getenv("OTP_API_KEY", "")
        self.from_email = from_email or os.getenv("OTP_FROM_EMAIL", DEFAULT_FROM_EMAIL)

        if not self.api_key:
            log.warning("OTP_API_KEY not set for Resend provider")

    def send_otp(self, email: str, otp: str, purpose: ChallengePurpose, full_name: str = "") -> bool:
        """Send OTP via Resend API."""
        if not self.api_key:
            log.error("Cannot send OTP: OTP_API_KEY not configured")
            return False

        try:
            response = httpx.post(
                self.url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": self.from_email,
                    "to": [email],
                    "subject": EMAIL_SUBJECTS[purpose],
                    "html": render_otp_email(full_name, otp, purpose),
                },
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            log.error("Failed to send OTP via Resend: %s", str(e)[:100])
            return False

        if response.status_code == 200:
            log.info("OTP sent via Resend to %s", mask_email(email))
            return True
        log.error("Resend API error: %s %s", response.status_code, response.text[:100])
        return False

    def get_provider_name(self) -> str:
        return "resend"


# ============================================================
# SendGrid Implementation (Production)
# ============================================================

class SendGridOTPService(OTPService):
    """
    OTP service using SendGrid API.

    Requires:
    - OTP_API_KEY: SendGrid API key
    - OTP_FROM_EMAIL: Verified sender email
    """

    url = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: Optional[str] = None, from_email: Optional[str] = None):
        self.api_key = api_key if api_key is not None else os.getenv("OTP_API_KEY", "")
        self.from_email = from_email or os.getenv("OTP_FROM_EMAIL", DEFAULT_FROM_EMAIL)

        if not self.api_key:
            log.warning("OTP_API_KEY not set for SendGrid provider")

    def send_otp(self, email: str, otp: str, purpose: ChallengePurpose, full_name: str = "") -> bool:
        """Send OTP via SendGrid API."""
        if not self.api_key:
            log.error("Cannot send OTP: OTP_API_KEY not configured")
            return False

        try:
            response = httpx.post(
                self.url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "personalizations": [{"to": [{"email": email}]}],
                    "from": {"email": self.from_email},
                    "subject": EMAIL_SUBJECTS[purpose],
                    "content": [
                        {"type": "text/html", "value": render_otp_email(full_name, otp, purpose)}
                    ],
                },
                timeout=10.0,
            )
        except httpx.HTTPError as e:
            log.error("Failed to send OTP via SendGrid: %s", str(e)[:100])
            return False

        if response.status_code in (200, 202):
            log.info("OTP sent via SendGrid to %s", mask_email(email))
            return True
        log.error("SendGrid API error: %s %s", response.status_code, response.text[:100])
        return False

    def get_provider_name(self) -> str:
        return "sendgrid"


# ============================================================
# Service Factory
# ============================================================

def get_otp_service() -> OTPService:
    """
    Get OTP service based on OTP_PROVIDER environment variable.

    Providers:
    - "stub" (default): Logs to console
    - "resend": Sends via Resend API
    - "sendgrid": Sends via SendGrid API
    """
    provider = os.getenv("OTP_PROVIDER", "stub").lower().strip()

    if provider == "resend":
        return ResendOTPService()
    elif provider == "sendgrid":
        return SendGridOTPService()
    else:
        if provider != "stub":
            log.warning("Unknown OTP_PROVIDER '%s', falling back to stub", provider)
        return StubOTPService()


# ============================================================
# Engine Outcomes
# ============================================================

class OtpVerifyResult(str, Enum):
    OK = "OK"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"


class ResendStatus(str, Enum):
    OK = "OK"
    SENT = "SENT"
    COOLDOWN = "COOLDOWN"
    RESEND_LIMIT = "RESEND_LIMIT"
    LOCKED = "LOCKED"


@dataclass
class ResendOutcome:
    status: ResendStatus
    cooldown_seconds: int = 0
    remaining_today: int = 0

    @property
    def sent(self) -> bool:
        return self.status == ResendStatus.SENT


# ============================================================
# OTP Engine
# ============================================================

class OTPEngine:
    """
    Manages challenge lifecycle: issue, verify, resend.

    Challenges are keyed by (owner_id, purpose). The signup flow owns
    SIGNUP challenges keyed by signup id; the reset flow owns
    RESET_PASSWORD challenges keyed by profile id.
    """

    def __init__(
        self,
        store: CredentialStore,
        service: Optional[OTPService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timezone: Optional[tzinfo] = None,
    ):
        """
        Args:
            store: Credential store holding challenge rows.
            service: OTP delivery service. If None, uses get_otp_service().
            clock: Returns the current aware UTC datetime.
            timezone: Zone that defines a calendar day for the resend cap.
        """
        self.store = store
        self.service = service or get_otp_service()
        self.clock = clock or utcnow
        self.timezone = timezone or get_app_timezone()

    # --------------------------------------------------------
    # Helpers
    # --------------------------------------------------------

    def same_local_day(self, a: datetime, b: datetime) -> bool:
        return a.astimezone(self.timezone).date() == b.astimezone(self.timezone).date()

    def resends_today(self, challenge: Challenge, now: Optional[datetime] = None) -> int:
        """Resend count that applies today (0 if the last send was on an earlier day)."""
        now = now or self.clock()
        if challenge.last_sent_at is None or not self.same_local_day(challenge.last_sent_at, now):
            return 0
        return challenge.resend_count

    def _dispatch(self, email: str, otp: str, purpose: ChallengePurpose, full_name: str) -> bool:
        try:
            sent = self.service.send_otp(email, otp, purpose, full_name)
        except Exception:
            log.exception("otp.dispatch.error provider=%s to=%s", self.service.get_provider_name(), mask_email(email))
            return False
        if not sent:
            log.warning("otp.dispatch.failed provider=%s to=%s", self.service.get_provider_name(), mask_email(email))
        return bool(sent)

    # --------------------------------------------------------
    # Operations
    # --------------------------------------------------------

    def get(self, owner_id: str, purpose: ChallengePurpose) -> Optional[Challenge]:
        return self.store.get_challenge(owner_id, purpose)

    def delete(self, owner_id: str, purpose: ChallengePurpose) -> bool:
        return self.store.delete_challenge(owner_id, purpose)

    def revoke(self, owner_id: str, purpose: ChallengePurpose) -> bool:
        """
        Invalidate the outstanding code but keep the row.

        Attempts, resend count, last send time and lock survive, so a
        revoke followed by a new send cannot reset the limits.
        """
        challenge = self.store.get_challenge(owner_id, purpose)
        if challenge is None:
            return False
        now = self.clock()
        challenge.otp_hash = ""
        challenge.expires_at = now
        challenge.updated_at = now
        self.store.save_challenge(challenge)
        log.info("otp.revoke purpose=%s owner=%s", purpose.value, hash_user_id(owner_id))
        return True

    def issue(self, owner_id: str, purpose: ChallengePurpose, email: str, full_name: str = "") -> Challenge:
        """
        Start a fresh challenge, replacing any existing one.

        Resets attempts, resend count and lock. The new code is persisted
        before it is dispatched.
        """
        now = self.clock()
        otp = generate_otp()
        challenge = self.store.save_challenge(Challenge(
            owner_id=owner_id,
            purpose=purpose,
            otp_hash=hash_otp(otp),
            expires_at=Challenge.compute_expiry(now),
            attempts=0,
            resend_count=0,
            last_sent_at=now,
            locked_at=None,
            created_at=now,
            updated_at=now,
        ))
        log.info("otp.issue purpose=%s owner=%s", purpose.value, hash_user_id(owner_id))
        self._dispatch(email, otp, purpose, full_name)
        return challenge

    def verify(self, owner_id: str, purpose: ChallengePurpose, code: str) -> OtpVerifyResult:
        """
        Check a submitted code.

        Order: missing → INVALID, expired → EXPIRED, locked → LOCKED,
        mismatch → INVALID (attempt counted, lock set on the 5th miss),
        match → challenge deleted and OK.
        """
        now = self.clock()
        challenge = self.store.get_challenge(owner_id, purpose)

        if challenge is None:
            log.info("otp.verify.missing purpose=%s owner=%s", purpose.value, hash_user_id(owner_id))
            return OtpVerifyResult.INVALID

        if challenge.is_expired(now):
            log.info("otp.verify.expired purpose=%s owner=%s", purpose.value, hash_user_id(owner_id))
            return OtpVerifyResult.EXPIRED

        if challenge.is_locked:
            log.warning("otp.verify.locked purpose=%s owner=%s", purpose.value, hash_user_id(owner_id))
            return OtpVerifyResult.LOCKED

        if not verify_otp_hash((code or "").strip(), challenge.otp_hash):
            challenge.attempts += 1
            challenge.updated_at = now
            if challenge.attempts >= OTP_MAX_ATTEMPTS:
                challenge.locked_at = now
            self.store.save_challenge(challenge)
            log.info(
                "otp.verify.mismatch purpose=%s owner=%s attempts=%d/%d",
                purpose.value, hash_user_id(owner_id), challenge.attempts, OTP_MAX_ATTEMPTS,
            )
            return OtpVerifyResult.INVALID

        self.store.delete_challenge(owner_id, purpose)
        log.info("otp.verify.ok purpose=%s owner=%s", purpose.value, hash_user_id(owner_id))
        return OtpVerifyResult.OK

    def check_send(self, challenge: Optional[Challenge], now: Optional[datetime] = None) -> ResendStatus:
        """
        Decide whether another code may be sent for this challenge.

        Returns LOCKED, COOLDOWN or RESEND_LIMIT when refused, else OK.
        """
        if challenge is None:
            return ResendStatus.OK
        now = now or self.clock()
        if challenge.is_locked:
            return ResendStatus.LOCKED
        if challenge.cooldown_remaining(now) > 0:
            return ResendStatus.COOLDOWN
        if self.resends_today(challenge, now) >= OTP_DAILY_RESEND_CAP:
            return ResendStatus.RESEND_LIMIT
        return ResendStatus.OK

    def resend(self, owner_id: str, purpose: ChallengePurpose, email: str, full_name: str = "") -> ResendOutcome:
        """
        Send a new code for an existing challenge.

        With no challenge on file this behaves as issue(). A refused send
        changes nothing and reports the refusal status.
        """
        now = self.clock()
        challenge = self.store.get_challenge(owner_id, purpose)

        if challenge is None:
            self.issue(owner_id, purpose, email, full_name)
            return ResendOutcome(
                status=ResendStatus.SENT,
                cooldown_seconds=OTP_COOLDOWN_SECONDS,
                remaining_today=OTP_DAILY_RESEND_CAP,
            )

        status = self.check_send(challenge, now)
        if status != ResendStatus.OK:
            log.info("otp.resend.refused purpose=%s owner=%s status=%s", purpose.value, hash_user_id(owner_id), status.value)
            return ResendOutcome(
                status=status,
                cooldown_seconds=challenge.cooldown_remaining(now),
                remaining_today=max(0, OTP_DAILY_RESEND_CAP - self.resends_today(challenge, now)),
            )

        otp = generate_otp()
        challenge.resend_count = self.resends_today(challenge, now) + 1
        challenge.otp_hash = hash_otp(otp)
        challenge.expires_at = Challenge.compute_expiry(now)
        challenge.attempts = 0
        challenge.last_sent_at = now
        challenge.updated_at = now
        self.store.save_challenge(challenge)
        log.info(
            "otp.resend purpose=%s owner=%s count=%d/%d",
            purpose.value, hash_user_id(owner_id), challenge.resend_count, OTP_DAILY_RESEND_CAP,
        )
        self._dispatch(email, otp, purpose, full_name)

        return ResendOutcome(
            status=ResendStatus.SENT,
            cooldown_seconds=OTP_COOLDOWN_SECONDS,
            remaining_today=OTP_DAILY_RESEND_CAP - challenge.resend_count,
        )
