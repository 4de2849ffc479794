# ignite/accounts/signup.py
"""
Signup lifecycle: register, verify, resend, change email, complete.

A registration lands in user_signups as PENDING_VERIFICATION with a SIGNUP
challenge. Verifying the code creates (or re-links) the member profile and
flips the signup to ACTIVE. Abandoned signups are expired by the daily
sweep and may later be revived in place by registering again.

Conflict priority on register (first match wins):
1. active profile with this email           → 409 EMAIL_EXISTS
2. active profile with this institutional id → 409 ZID_EXISTS
3. pending signup with either               → 409 PENDING_VERIFICATION_EXISTS
                                               (+ fresh resume token)
4. expired signup with this email           → revive that row
5. expired signup with this institutional id → revive that row
6. otherwise                                 → insert a new row

Revival keeps the row id, so a profile linked to it later stays stable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ignite.privacy_utils import mask_email, mask_institutional_id, hash_user_id
from ignite.accounts.auth import TokenIssuer, hash_password
from ignite.accounts.errors import (
    ErrorCode,
    ConflictError,
    NotFoundError,
    OtpError,
    RateLimitError,
)
from ignite.accounts.models import (
    ChallengePurpose,
    ProfileRecord,
    ProfileStatus,
    RegisterInput,
    SignupRecord,
    SignupStatus,
    normalize_email,
    utcnow,
)
from ignite.accounts.otp import OTPEngine, OtpVerifyResult, ResendOutcome, ResendStatus
from ignite.accounts.store import CredentialStore, DuplicateRecordError

log = logging.getLogger("ignite.signup")

# ============================================================
# Outcome → Error Tables
# ============================================================

VERIFY_ERRORS = {
    OtpVerifyResult.INVALID: (ErrorCode.OTP_INVALID, "Invalid verification code"),
    OtpVerifyResult.EXPIRED: (ErrorCode.OTP_EXPIRED, "Verification code has expired"),
    OtpVerifyResult.LOCKED: (ErrorCode.OTP_LOCKED, "Too many attempts. Please request a new code"),
}

RESEND_ERRORS = {
    ResendStatus.COOLDOWN: (RateLimitError, ErrorCode.OTP_COOLDOWN, "Please wait before requesting another code"),
    ResendStatus.RESEND_LIMIT: (RateLimitError, ErrorCode.OTP_RESEND_LIMIT, "Daily resend limit reached"),
    ResendStatus.LOCKED: (OtpError, ErrorCode.OTP_LOCKED, "Too many attempts. Verification is locked"),
}


@dataclass
class RegistrationResult:
    signup_id: str
    resume_token: str
    revived: bool = False


# ============================================================
# Signup Lifecycle Manager
# ============================================================

class SignupLifecycleManager:
    """Owns the user_signups rows and their SIGNUP challenges."""

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

    # --------------------------------------------------------
    # Register
    # --------------------------------------------------------

    def _pending_conflict(self, email: str, institutional_id: str) -> Optional[ConflictError]:
        pending = self.store.find_signup_by_email(email, SignupStatus.PENDING_VERIFICATION)
        if pending is None:
            pending = self.store.find_signup_by_institutional_id(
                institutional_id, SignupStatus.PENDING_VERIFICATION
            )
        if pending is None:
            return None
        log.info("signup.register.pending_exists signup=%s", hash_user_id(pending.id))
        return ConflictError(
            ErrorCode.PENDING_VERIFICATION_EXISTS,
            "A signup is already waiting for verification",
            extra={"resumeToken": self.tokens.issue_resume_token(pending.id)},
        )

    def register(self, data: RegisterInput) -> RegistrationResult:
        """
        Stage a new signup (or revive an expired one) and send its code.

        Raises:
            ConflictError: EMAIL_EXISTS, ZID_EXISTS or PENDING_VERIFICATION_EXISTS.
        """
        email = data.email
        zid = data.institutional_id

        profile = self.store.find_profile_by_email(email)
        if profile is not None and profile.is_active:
            log.info("signup.register.email_exists email=%s", mask_email(email))
            raise ConflictError(ErrorCode.EMAIL_EXISTS, "An account with this email already exists")

        profile = self.store.find_profile_by_institutional_id(zid)
        if profile is not None and profile.is_active:
            log.info("signup.register.zid_exists zid=%s", mask_institutional_id(zid))
            raise ConflictError(ErrorCode.ZID_EXISTS, "An account with this institutional id already exists")

        conflict = self._pending_conflict(email, zid)
        if conflict is not None:
            raise conflict

        password_hash = hash_password(data.password)
        now = self.clock()

        expired = self.store.find_signup_by_email(email, SignupStatus.EXPIRED)
        if expired is None:
            expired = self.store.find_signup_by_institutional_id(zid, SignupStatus.EXPIRED)

        try:
            if expired is not None:
                signup = self._revive(expired, data, password_hash, now)
                revived = True
            else:
                signup = self.store.insert_signup(SignupRecord(
                    email=email,
                    institutional_id=zid,
                    full_name=data.full_name,
                    level=data.level,
                    year_intake=data.year_intake,
                    is_indonesian=data.is_indonesian,
                    program=data.program,
                    major=data.major,
                    password_hash=password_hash,
                    status=SignupStatus.PENDING_VERIFICATION,
                    created_at=now,
                    updated_at=now,
                ))
                revived = False
        except DuplicateRecordError:
            # A concurrent registration created the pending row first.
            conflict = self._pending_conflict(email, zid)
            if conflict is None:
                conflict = ConflictError(
                    ErrorCode.PENDING_VERIFICATION_EXISTS,
                    "A signup is already waiting for verification",
                )
            raise conflict

        self.otp.issue(signup.id, ChallengePurpose.SIGNUP, signup.email, signup.full_name)
        log.info(
            "signup.register.%s signup=%s email=%s",
            "revived" if revived else "created",
            hash_user_id(signup.id),
            mask_email(email),
        )
        return RegistrationResult(
            signup_id=signup.id,
            resume_token=self.tokens.issue_resume_token(signup.id),
            revived=revived,
        )

    def _revive(self, signup: SignupRecord, data: RegisterInput, password_hash: str, now: datetime) -> SignupRecord:
        """Overwrite an EXPIRED row in place and restart its 7-day window."""
        signup.email = data.email
        signup.institutional_id = data.institutional_id
        signup.full_name = data.full_name
        signup.level = data.level
        signup.year_intake = data.year_intake
        signup.is_indonesian = data.is_indonesian
        signup.program = data.program
        signup.major = data.major
        signup.password_hash = password_hash
        signup.status = SignupStatus.PENDING_VERIFICATION
        signup.email_verified_at = None
        signup.created_at = now
        signup.updated_at = now
        return self.store.update_signup(signup)

    # --------------------------------------------------------
    # Verify / Resend
    # --------------------------------------------------------

    def _load_pending(self, resume_token: str) -> SignupRecord:
        return self._load_pending_by_id(self.tokens.verify_resume_token(resume_token))

    def _load_pending_by_id(self, signup_id: str) -> SignupRecord:
        signup = self.store.get_signup(signup_id)
        if signup is None or signup.status == SignupStatus.EXPIRED:
            raise NotFoundError(ErrorCode.PENDING_NOT_FOUND, "Pending signup not found")
        if signup.status == SignupStatus.ACTIVE:
            raise ConflictError(ErrorCode.ALREADY_VERIFIED, "This signup is already verified")
        return signup

    def verify(self, resume_token: str, otp: str) -> str:
        """
        Check the signup code and activate the account.

        Returns:
            The linked profile id.
        """
        signup = self._load_pending(resume_token)
        result = self.otp.verify(signup.id, ChallengePurpose.SIGNUP, otp)
        if result != OtpVerifyResult.OK:
            code, message = VERIFY_ERRORS[result]
            raise OtpError(code, message)
        return self.complete_verification(signup.id)

    def resend(self, resume_token: str) -> ResendOutcome:
        """Send a fresh signup code, subject to cooldown, cap and lock."""
        signup = self._load_pending(resume_token)
        outcome = self.otp.resend(signup.id, ChallengePurpose.SIGNUP, signup.email, signup.full_name)
        if outcome.status in RESEND_ERRORS:
            error_cls, code, message = RESEND_ERRORS[outcome.status]
            extra = {"retryAfter": outcome.cooldown_seconds} if code == ErrorCode.OTP_COOLDOWN else None
            raise error_cls(code, message, extra=extra)
        return outcome

    # --------------------------------------------------------
    # Change Email (pre-verification)
    # --------------------------------------------------------

    def change_pending_email(self, resume_token: str, new_email: str) -> str:
        """
        Point a pending signup at a different email before it is verified.

        The old code is discarded and a fresh one goes to the new address.
        Cooldown and daily cap restart with the new challenge.

        Returns:
            A fresh resume token for the same signup row.

        Raises:
            TokenError(RESUME_TOKEN_INVALID), ConflictError(EMAIL_EXISTS |
            PENDING_VERIFICATION_EXISTS | ALREADY_VERIFIED),
            NotFoundError(PENDING_NOT_FOUND).
        """
        signup_id = self.tokens.verify_resume_token(resume_token)
        email = normalize_email(new_email)

        profile = self.store.find_profile_by_email(email)
        if profile is not None and profile.is_active:
            log.info("signup.change_email.email_exists email=%s", mask_email(email))
            raise ConflictError(ErrorCode.EMAIL_EXISTS, "An account with this email already exists")

        signup = self._load_pending_by_id(signup_id)
        signup.email = email
        signup.updated_at = self.clock()
        try:
            signup = self.store.update_signup(signup)
        except DuplicateRecordError:
            log.info("signup.change_email.pending_exists signup=%s", hash_user_id(signup.id))
            raise ConflictError(
                ErrorCode.PENDING_VERIFICATION_EXISTS,
                "Another signup is already waiting for verification with this email",
            )

        self.otp.delete(signup.id, ChallengePurpose.SIGNUP)
        self.otp.issue(signup.id, ChallengePurpose.SIGNUP, signup.email, signup.full_name)
        log.info("signup.change_email.ok signup=%s email=%s", hash_user_id(signup.id), mask_email(email))
        return self.tokens.issue_resume_token(signup.id)

    # --------------------------------------------------------
    # Completion
    # --------------------------------------------------------

    def _find_profile_for(self, signup: SignupRecord) -> Optional[ProfileRecord]:
        profile = self.store.get_profile(signup.profile_id) if signup.profile_id else None
        if profile is None:
            profile = self.store.find_profile_by_institutional_id(signup.institutional_id)
        if profile is None:
            # Register lets an inactive profile's email through
            profile = self.store.find_profile_by_email(signup.email)
            if profile is not None and profile.is_active:
                raise ConflictError(ErrorCode.EMAIL_EXISTS, "An account with this email already exists")
        return profile

    def _relink_profile(self, profile: ProfileRecord, signup: SignupRecord, now: datetime) -> ProfileRecord:
        profile.email = signup.email
        profile.institutional_id = signup.institutional_id
        profile.password_hash = signup.password_hash
        profile.status = ProfileStatus.ACTIVE
        profile.updated_at = now
        try:
            profile = self.store.update_profile(profile)
        except DuplicateRecordError:
            log.warning("signup.profile.relink_conflict profile=%s", hash_user_id(profile.id))
            raise ConflictError(ErrorCode.EMAIL_EXISTS, "An account with this email already exists")
        log.info("signup.profile.linked profile=%s", hash_user_id(profile.id))
        return profile

    def complete_verification(self, signup_id: str) -> str:
        """
        Ensure an active profile exists for a verified signup.

        Idempotent: reuses the linked profile, else one with the same
        institutional id, else one with the same email, else creates one.
        Returns the profile id.

        Raises:
            ConflictError(EMAIL_EXISTS): the email belongs to another
                active profile, or email and institutional id belong to
                two different existing profiles.
        """
        signup = self.store.get_signup(signup_id)
        if signup is None:
            raise NotFoundError(ErrorCode.PENDING_NOT_FOUND, "Pending signup not found")

        now = self.clock()
        profile = self._find_profile_for(signup)

        if profile is None:
            try:
                profile = self.store.insert_profile(ProfileRecord(
                    email=signup.email,
                    institutional_id=signup.institutional_id,
                    full_name=signup.full_name,
                    level=signup.level,
                    year_start=signup.year_intake,
                    is_indonesian=signup.is_indonesian,
                    status=ProfileStatus.ACTIVE,
                    password_hash=signup.password_hash,
                    created_at=now,
                    updated_at=now,
                ))
                log.info("signup.profile.created profile=%s", hash_user_id(profile.id))
            except DuplicateRecordError:
                # A concurrent verification created the profile first.
                profile = self._find_profile_for(signup)
                if profile is None:
                    raise ConflictError(ErrorCode.EMAIL_EXISTS, "An account with this email already exists")
                profile = self._relink_profile(profile, signup, now)
        else:
            profile = self._relink_profile(profile, signup, now)

        if signup.profile_id != profile.id:
            signup.profile_id = profile.id
            signup.updated_at = now
            signup = self.store.update_signup(signup)

        if signup.status != SignupStatus.ACTIVE:
            signup.status = SignupStatus.ACTIVE
            signup.email_verified_at = now
            signup.updated_at = now
            self.store.update_signup(signup)
            log.info("signup.verified signup=%s", hash_user_id(signup.id))

        return profile.id
