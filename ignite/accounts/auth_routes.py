# ignite/accounts/auth_routes.py
"""
Account routes: signup verification and password reset.

Endpoints:
- POST /auth/register: Stage a signup and email a code
- POST /auth/verify-otp: Verify the signup code, activate the profile
- POST /auth/resend-otp: Send a new signup code
- PATCH /auth/pending/email: Change the email of a pending signup
- POST /auth/password/request-reset: Email a reset code (generic reply)
- POST /auth/password/verify-otp: Exchange a reset code for a session token
- POST /auth/password/reset: Set a new password
- POST /auth/password/resend-otp: Send a new reset code (generic reply)
- POST /auth/password/cancel: Drop the reset challenge (generic reply)

Rate Limits:
┌──────────────────────────────────────────────────────────────────────────────┐
│ Endpoint                     │ IP Limit        │ Per-Account Limit           │
├──────────────────────────────────────────────────────────────────────────────┤
│ /auth/register               │ 10/hour         │ one pending signup          │
│ /auth/verify-otp             │ 10/10 minutes   │ 5 attempts, then locked     │
│ /auth/resend-otp             │ 3/minute        │ 60s cooldown + 5/day        │
│ /auth/pending/email          │ 5/10 minutes    │ one pending signup          │
│ /auth/password/request-reset │ 5/10 minutes    │ 60s cooldown + 5/day        │
│ /auth/password/resend-otp    │ 5/10 minutes    │ 60s cooldown + 5/day        │
│ /auth/password/verify-otp    │ 10/10 minutes   │ 5 attempts, then locked     │
└──────────────────────────────────────────────────────────────────────────────┘

Security:
- Anti-enumeration: reset request/resend/cancel reply identically for any email
- Field names are camelCase on the wire
- No raw PII in logs
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, EmailStr, ConfigDict, field_validator

from slowapi import Limiter
from slowapi.util import get_remote_address

from ignite.db import is_rate_limit_enabled
from ignite.privacy_utils import hash_user_id
from ignite.accounts.models import RegisterInput, normalize_email
from ignite.accounts.password_reset import PasswordResetOrchestrator
from ignite.accounts.services import get_password_reset, get_signup_manager
from ignite.accounts.signup import SignupLifecycleManager

log = logging.getLogger("ignite.auth_routes")

# ============================================================
# Router Setup
# ============================================================

router = APIRouter(prefix="/auth", tags=["Authentication"])

# Shared with the app (main.py puts it on app.state.limiter)
limiter = Limiter(key_func=get_remote_address, enabled=is_rate_limit_enabled())

OTP_PATTERN = r"^[0-9]{6}$"


# ============================================================
# Request/Response Schemas
# ============================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class EmailInput(CamelModel):
    """Input schema for the reset request/resend/cancel routes."""

    email: EmailStr = Field(..., description="Account email")

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email_field(cls, v):
        return normalize_email(v)


class VerifySignupInput(CamelModel):
    resume_token: str = Field(..., alias="resumeToken", min_length=1)
    otp: str = Field(..., description="6-digit verification code", pattern=OTP_PATTERN)

    @field_validator("otp", mode="before")
    @classmethod
    def strip_otp(cls, v):
        return v.strip() if isinstance(v, str) else v


class ResendSignupInput(CamelModel):
    resume_token: str = Field(..., alias="resumeToken", min_length=1)


class ChangePendingEmailInput(CamelModel):
    resume_token: str = Field(..., alias="resumeToken", min_length=1)
    new_email: EmailStr = Field(..., alias="newEmail")

    @field_validator("new_email", mode="before")
    @classmethod
    def normalize_new_email(cls, v):
        return normalize_email(v)


class VerifyResetInput(EmailInput):
    otp: str = Field(..., description="6-digit reset code", pattern=OTP_PATTERN)

    @field_validator("otp", mode="before")
    @classmethod
    def strip_otp(cls, v):
        return v.strip() if isinstance(v, str) else v


class ResetPasswordInput(CamelModel):
    reset_session_token: str = Field(..., alias="resetSessionToken", min_length=1)
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword")


class RegisterResponse(CamelModel):
    signup_id: str = Field(..., alias="signupId")
    resume_token: str = Field(..., alias="resumeToken")


class VerifySignupResponse(CamelModel):
    success: bool = True
    message: str = "Email verified"
    profile_id: str = Field(..., alias="profileId")


class ResendSignupResponse(CamelModel):
    success: bool = True
    cooldown_seconds: int = Field(..., alias="cooldownSeconds")
    remaining_today: int = Field(..., alias="remainingToday")


class ChangePendingEmailResponse(CamelModel):
    success: bool = True
    resume_token: str = Field(..., alias="resumeToken")


class MessageResponse(CamelModel):
    """Generic reply; identical for known and unknown emails."""

    success: bool = Field(..., description="Always true")
    message: str = Field(...)


class ResetSessionResponse(CamelModel):
    reset_session_token: str = Field(..., alias="resetSessionToken")
    expires_in: int = Field(..., alias="expiresIn", description="Seconds until the token expires")


# ============================================================
# Signup Endpoints
# ============================================================

@router.post(
    "/register",
    status_code=201,
    response_model=RegisterResponse,
    responses={
        400: {"description": "Validation error"},
        409: {"description": "EMAIL_EXISTS, ZID_EXISTS or PENDING_VERIFICATION_EXISTS (with resumeToken)"},
        429: {"description": "Rate limit exceeded"},
    },
    summary="Register",
)
@limiter.limit("10/hour")
def register_endpoint(
    body: RegisterInput,
    request: Request,
    signups: SignupLifecycleManager = Depends(get_signup_manager),
) -> RegisterResponse:
    """
    Stage a signup and email a 6-digit code.

    An expired signup for the same email or institutional id is revived
    in place instead of creating a new row.
    """
    result = signups.register(body)
    return RegisterResponse(signup_id=result.signup_id, resume_token=result.resume_token)


@router.post(
    "/verify-otp",
    response_model=VerifySignupResponse,
    responses={
        400: {"description": "OTP_INVALID or OTP_EXPIRED"},
        401: {"description": "RESUME_TOKEN_INVALID"},
        404: {"description": "PENDING_NOT_FOUND"},
        409: {"description": "ALREADY_VERIFIED"},
        423: {"description": "OTP_LOCKED"},
    },
    summary="Verify signup code",
)
@limiter.limit("10 per 10 minutes")
def verify_signup_endpoint(
    body: VerifySignupInput,
    request: Request,
    signups: SignupLifecycleManager = Depends(get_signup_manager),
) -> VerifySignupResponse:
    profile_id = signups.verify(body.resume_token, body.otp)
    log.info("auth_routes.verify.ok profile=%s", hash_user_id(profile_id))
    return VerifySignupResponse(profile_id=profile_id)


@router.post(
    "/resend-otp",
    response_model=ResendSignupResponse,
    responses={
        401: {"description": "RESUME_TOKEN_INVALID"},
        404: {"description": "PENDING_NOT_FOUND"},
        409: {"description": "ALREADY_VERIFIED"},
        423: {"description": "OTP_LOCKED"},
        429: {"description": "OTP_COOLDOWN (retryAfter) or OTP_RESEND_LIMIT"},
    },
    summary="Resend signup code",
)
@limiter.limit("3/minute")
def resend_signup_endpoint(
    body: ResendSignupInput,
    request: Request,
    signups: SignupLifecycleManager = Depends(get_signup_manager),
) -> ResendSignupResponse:
    outcome = signups.resend(body.resume_token)
    return ResendSignupResponse(
        cooldown_seconds=outcome.cooldown_seconds,
        remaining_today=outcome.remaining_today,
    )


@router.patch(
    "/pending/email",
    response_model=ChangePendingEmailResponse,
    responses={
        400: {"description": "Validation error"},
        401: {"description": "RESUME_TOKEN_INVALID"},
        404: {"description": "PENDING_NOT_FOUND"},
        409: {"description": "EMAIL_EXISTS, PENDING_VERIFICATION_EXISTS or ALREADY_VERIFIED"},
    },
    summary="Change pending signup email",
)
@limiter.limit("5 per 10 minutes")
def change_pending_email_endpoint(
    body: ChangePendingEmailInput,
    request: Request,
    signups: SignupLifecycleManager = Depends(get_signup_manager),
) -> ChangePendingEmailResponse:
    """
    Fix a mistyped email before verification.

    The previous code stops working; a new one is sent to the new address
    and a fresh resume token is returned.
    """
    resume_token = signups.change_pending_email(body.resume_token, body.new_email)
    return ChangePendingEmailResponse(resume_token=resume_token)


# ============================================================
# Password Reset Endpoints
# ============================================================

@router.post(
    "/password/request-reset",
    response_model=MessageResponse,
    summary="Request password reset",
    description="""
    Email a reset code if an active account owns the address.

    **Anti-Enumeration**: Response is always the same whether the email exists or not.
    """,
)
@limiter.limit("5 per 10 minutes")
def request_reset_endpoint(
    body: EmailInput,
    request: Request,
    resets: PasswordResetOrchestrator = Depends(get_password_reset),
) -> MessageResponse:
    return MessageResponse(**resets.request(body.email))


@router.post(
    "/password/resend-otp",
    response_model=MessageResponse,
    summary="Resend password reset code",
)
@limiter.limit("5 per 10 minutes")
def resend_reset_endpoint(
    body: EmailInput,
    request: Request,
    resets: PasswordResetOrchestrator = Depends(get_password_reset),
) -> MessageResponse:
    return MessageResponse(**resets.resend(body.email))


@router.post(
    "/password/verify-otp",
    response_model=ResetSessionResponse,
    responses={
        400: {"description": "OTP_INVALID or OTP_EXPIRED"},
        423: {"description": "OTP_LOCKED"},
    },
    summary="Verify password reset code",
)
@limiter.limit("10 per 10 minutes")
def verify_reset_endpoint(
    body: VerifyResetInput,
    request: Request,
    resets: PasswordResetOrchestrator = Depends(get_password_reset),
) -> ResetSessionResponse:
    session = resets.verify(body.email, body.otp)
    return ResetSessionResponse(
        reset_session_token=session["reset_session_token"],
        expires_in=session["expires_in"],
    )


@router.post(
    "/password/reset",
    response_model=MessageResponse,
    responses={
        400: {"description": "VALIDATION_ERROR"},
        401: {"description": "RESET_SESSION_INVALID"},
    },
    summary="Set a new password",
)
def reset_password_endpoint(
    body: ResetPasswordInput,
    resets: PasswordResetOrchestrator = Depends(get_password_reset),
) -> MessageResponse:
    return MessageResponse(**resets.reset(body.reset_session_token, body.new_password, body.confirm_password))


@router.post(
    "/password/cancel",
    response_model=MessageResponse,
    summary="Cancel password reset",
)
def cancel_reset_endpoint(
    body: EmailInput,
    resets: PasswordResetOrchestrator = Depends(get_password_reset),
) -> MessageResponse:
    return MessageResponse(**resets.cancel(body.email))
