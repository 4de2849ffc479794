# ignite/accounts/models.py
"""
Pydantic models for the account lifecycle tables.

Tables (3):
1. user_signups: One row per registration attempt (staging area)
2. profiles: Active member accounts, created when a signup completes
3. user_otps: One-time-code challenges, unique per (owner_id, purpose)

Design Decisions:
- Pydantic v2 syntax (model_validator, ConfigDict)
- All timestamps are timezone-aware UTC
- Emails and institutional ids stored lowercase
- Signup OTP state lives in a user_otps row (purpose=SIGNUP, owner=signup id)

Privacy Rails:
- OTP stored as SHA-256 hash only
- Password stored as bcrypt hash only
- Email validated but never logged raw
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Any

from pydantic import (
    BaseModel,
    Field,
    EmailStr,
    field_validator,
    model_validator,
    ConfigDict,
)

# ============================================================
# Constants
# ============================================================

# OTP settings
OTP_TTL_MINUTES = 10
OTP_MAX_ATTEMPTS = 5
OTP_COOLDOWN_SECONDS = 60
OTP_DAILY_RESEND_CAP = 5

# Token lifetimes
RESUME_TOKEN_TTL_MINUTES = 30
RESET_SESSION_TTL_MINUTES = 10

# Sweep windows
SIGNUP_EXPIRY_DAYS = 7
EXPIRED_PURGE_DAYS = 15

# Password bounds (bcrypt only uses the first 72 bytes)
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_BYTES = 72

INSTITUTIONAL_ID_PATTERN = re.compile(r"^z[0-9]{7}$")


class SignupStatus(str, Enum):
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    EXPIRED = "EXPIRED"
    ACTIVE = "ACTIVE"


class ProfileStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class ChallengePurpose(str, Enum):
    SIGNUP = "SIGNUP"
    RESET_PASSWORD = "RESET_PASSWORD"


# ============================================================
# Helpers
# ============================================================

def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a database timestamp into an aware UTC datetime.

    PostgREST returns ISO strings (sometimes with a trailing Z); the
    in-memory store hands back datetimes. Naive values are assumed UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def normalize_institutional_id(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def validate_password_strength(password: str) -> str:
    """Enforce length bounds shared by registration and password reset."""
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"password must be at most {PASSWORD_MAX_BYTES} bytes")
    return password


# ============================================================
# SignupRecord Model
# ============================================================

class SignupRecord(BaseModel):
    """
    A registration attempt waiting for (or past) email verification.

    At most one PENDING_VERIFICATION row may exist per email and,
    separately, per institutional id.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id, description="Signup UUID (primary key)")
    email: str = Field(..., description="Signup email (lowercase)")
    institutional_id: str = Field(..., description="Institutional id, e.g. z1234567")
    full_name: str = Field(..., description="Full name as registered")
    level: Optional[str] = Field(default=None, description="Study level")
    year_intake: int = Field(..., description="Year of intake")
    is_indonesian: bool = Field(default=False)
    program: str = Field(..., description="Program name (free text)")
    major: str = Field(..., description="Major name (free text)")
    password_hash: str = Field(..., description="bcrypt hash")
    status: SignupStatus = Field(default=SignupStatus.PENDING_VERIFICATION)
    profile_id: Optional[str] = Field(default=None, description="Linked profile once verified")
    email_verified_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == SignupStatus.PENDING_VERIFICATION

    @classmethod
    def from_db_row(cls, row: dict) -> "SignupRecord":
        """Create SignupRecord from database row."""
        return cls(
            id=str(row["id"]),
            email=row["signup_email"],
            institutional_id=row["zid"],
            full_name=row.get("full_name") or "",
            level=row.get("level"),
            year_intake=row.get("year_intake") or 0,
            is_indonesian=bool(row.get("is_indonesian", False)),
            program=row.get("program") or "",
            major=row.get("major") or "",
            password_hash=row.get("password_hash") or "",
            status=SignupStatus(row["status"]),
            profile_id=row.get("profile_id"),
            email_verified_at=parse_timestamp(row.get("email_verified_at")),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row.get("updated_at") or row["created_at"]),
        )

    def to_db_row(self) -> dict:
        return {
            "id": self.id,
            "signup_email": self.email,
            "zid": self.institutional_id,
            "full_name": self.full_name,
            "level": self.level,
            "year_intake": self.year_intake,
            "is_indonesian": self.is_indonesian,
            "program": self.program,
            "major": self.major,
            "password_hash": self.password_hash,
            "status": self.status.value,
            "profile_id": self.profile_id,
            "email_verified_at": _iso(self.email_verified_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================================
# ProfileRecord Model
# ============================================================

class ProfileRecord(BaseModel):
    """
    An activated member account.

    Profile CRUD lives elsewhere; this core only needs identity, the
    credential hash and the token version used to revoke sessions.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id, description="Profile UUID (primary key)")
    email: str = Field(..., description="Account email (lowercase)")
    institutional_id: str = Field(...)
    full_name: str = Field(default="")
    level: Optional[str] = Field(default=None)
    year_start: Optional[int] = Field(default=None)
    is_indonesian: bool = Field(default=False)
    status: ProfileStatus = Field(default=ProfileStatus.ACTIVE)
    password_hash: str = Field(default="")
    token_version: int = Field(default=1, description="Bumped to revoke all issued tokens")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ProfileStatus.ACTIVE

    @classmethod
    def from_db_row(cls, row: dict) -> "ProfileRecord":
        """Create ProfileRecord from database row."""
        return cls(
            id=str(row["id"]),
            email=row["email"],
            institutional_id=row["zid"],
            full_name=row.get("full_name") or "",
            level=row.get("level"),
            year_start=row.get("year_start"),
            is_indonesian=bool(row.get("is_indonesian", False)),
            status=ProfileStatus(row.get("status") or ProfileStatus.ACTIVE.value),
            password_hash=row.get("password_hash") or "",
            token_version=row.get("token_version") or 1,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row.get("updated_at") or row["created_at"]),
        )

    def to_db_row(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "zid": self.institutional_id,
            "full_name": self.full_name,
            "level": self.level,
            "year_start": self.year_start,
            "is_indonesian": self.is_indonesian,
            "status": self.status.value,
            "password_hash": self.password_hash,
            "token_version": self.token_version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================================
# Challenge Model
# ============================================================

class Challenge(BaseModel):
    """
    One outstanding one-time code.

    Security:
    - OTP stored as SHA-256 hash (never plaintext)
    - TTL: 10 minutes
    - Max attempts: 5, then locked until reissued
    - Single-use: Deleted after successful verification
    - Cooldown: 60s between sends, 5 resends per calendar day
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id, description="Challenge UUID")
    owner_id: str = Field(..., description="Signup id (SIGNUP) or profile id (RESET_PASSWORD)")
    purpose: ChallengePurpose = Field(...)
    otp_hash: str = Field(..., description="SHA-256 hash of 6-digit OTP")
    expires_at: datetime = Field(..., description="Expiry timestamp (last send + 10min)")
    attempts: int = Field(default=0, description="Failed verification attempts")
    resend_count: int = Field(default=0, description="Resends on the day of last_sent_at")
    last_sent_at: Optional[datetime] = Field(default=None)
    locked_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def cooldown_remaining(self, now: datetime) -> int:
        """Seconds left before another code may be sent (0 if none)."""
        if self.last_sent_at is None:
            return 0
        elapsed = (now - self.last_sent_at).total_seconds()
        return max(0, int(OTP_COOLDOWN_SECONDS - elapsed + 0.999))

    @staticmethod
    def compute_expiry(sent_at: datetime) -> datetime:
        """Compute expiry timestamp (sent_at + 10 minutes)."""
        return sent_at + timedelta(minutes=OTP_TTL_MINUTES)

    @classmethod
    def from_db_row(cls, row: dict) -> "Challenge":
        """Create Challenge from database row."""
        return cls(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            purpose=ChallengePurpose(row["purpose"]),
            otp_hash=row["otp_hash"],
            expires_at=parse_timestamp(row["expires_at"]),
            attempts=row.get("attempts") or 0,
            resend_count=row.get("resend_count") or 0,
            last_sent_at=parse_timestamp(row.get("last_sent_at")),
            locked_at=parse_timestamp(row.get("locked_at")),
            created_at=parse_timestamp(row.get("created_at") or row["expires_at"]),
            updated_at=parse_timestamp(row.get("updated_at") or row["expires_at"]),
        )

    def to_db_row(self) -> dict:
        return {
            "id": self.id,
            "owner_table": "user_signups" if self.purpose == ChallengePurpose.SIGNUP else "profiles",
            "owner_id": self.owner_id,
            "purpose": self.purpose.value,
            "otp_hash": self.otp_hash,
            "expires_at": _iso(self.expires_at),
            "attempts": self.attempts,
            "resend_count": self.resend_count,
            "last_sent_at": _iso(self.last_sent_at),
            "locked_at": _iso(self.locked_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================================
# Registration Input
# ============================================================

class RegisterInput(BaseModel):
    """Validated registration form (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(..., alias="fullName", min_length=1, max_length=120)
    institutional_id: str = Field(..., alias="institutionalId")
    level: Optional[str] = Field(default=None, max_length=40)
    year_intake: int = Field(..., alias="yearIntake", ge=2000, le=2100)
    is_indonesian: bool = Field(..., alias="isIndonesian")
    program: str = Field(..., min_length=1, max_length=120)
    major: str = Field(..., min_length=1, max_length=120)
    email: EmailStr = Field(..., description="Signup email")
    password: str = Field(...)
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email_field(cls, v):
        return normalize_email(v)

    @field_validator("institutional_id", mode="before")
    @classmethod
    def validate_institutional_id(cls, v):
        v = normalize_institutional_id(v)
        if not isinstance(v, str) or not INSTITUTIONAL_ID_PATTERN.match(v):
            raise ValueError("institutionalId must be 'z' followed by 7 digits")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        return validate_password_strength(v)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self
