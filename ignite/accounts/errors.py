# ignite/accounts/errors.py
"""
Typed errors for the account lifecycle.

Every failure that crosses the HTTP boundary is an AccountError carrying a
stable machine-readable code (ErrorCode), a user-safe message, the HTTP
status it maps to, and optional extras merged into the JSON envelope.

Status mapping:
- ValidationError  → 400
- TokenError       → 401
- NotFoundError    → 404
- ConflictError    → 409
- OtpError         → 400 (invalid/expired) or 423 (locked)
- RateLimitError   → 429
- InternalError    → 500
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    ZID_EXISTS = "ZID_EXISTS"
    PENDING_VERIFICATION_EXISTS = "PENDING_VERIFICATION_EXISTS"
    ALREADY_VERIFIED = "ALREADY_VERIFIED"
    PENDING_NOT_FOUND = "PENDING_NOT_FOUND"
    RESUME_TOKEN_INVALID = "RESUME_TOKEN_INVALID"
    RESET_SESSION_INVALID = "RESET_SESSION_INVALID"
    OTP_INVALID = "OTP_INVALID"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_LOCKED = "OTP_LOCKED"
    OTP_COOLDOWN = "OTP_COOLDOWN"
    OTP_RESEND_LIMIT = "OTP_RESEND_LIMIT"
    RATE_LIMIT = "RATE_LIMIT"
    INTERNAL = "INTERNAL"


class AccountError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR
    default_message = "Request could not be processed"

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.extra = extra or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"code": self.code.value, "message": self.message}
        body.update(self.extra)
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}, {self.status_code})"


class ValidationError(AccountError):
    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request"


class ConflictError(AccountError):
    status_code = 409
    default_code = ErrorCode.EMAIL_EXISTS
    default_message = "Account already exists"


class NotFoundError(AccountError):
    status_code = 404
    default_code = ErrorCode.PENDING_NOT_FOUND
    default_message = "Pending signup not found"


class TokenError(AccountError):
    status_code = 401
    default_code = ErrorCode.RESUME_TOKEN_INVALID
    default_message = "Token is invalid or expired"


class OtpError(AccountError):
    """Wrong, expired or locked code. Locked maps to 423."""

    status_code = 400
    default_code = ErrorCode.OTP_INVALID
    default_message = "Invalid verification code"

    def __init__(self, code: Optional[ErrorCode] = None, message: Optional[str] = None, **kwargs):
        super().__init__(code, message, **kwargs)
        if self.code == ErrorCode.OTP_LOCKED and "status_code" not in kwargs:
            self.status_code = 423


class RateLimitError(AccountError):
    status_code = 429
    default_code = ErrorCode.OTP_COOLDOWN
    default_message = "Please wait before requesting another code"


class InternalError(AccountError):
    status_code = 500
    default_code = ErrorCode.INTERNAL
    default_message = "Internal server error"
