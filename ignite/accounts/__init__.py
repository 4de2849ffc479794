# ignite/accounts/__init__.py
"""
Ignite Accounts Package

This package provides:
- Signup staging, email verification and revival of expired signups
- OTP challenges (issue, verify, resend) with lockout and resend caps
- Purpose-bound resume / reset-session tokens
- Enumeration-safe password reset
- Daily expiry and purge sweeps

Submodules:
- models: Pydantic models for signups, profiles, challenges
- errors: ErrorCode enum and typed AccountError hierarchy
- store: Credential store (in-memory and Supabase)
- otp: OTP engine and notification providers
- auth: Token issuer and bcrypt helpers
- signup: SignupLifecycleManager
- password_reset: PasswordResetOrchestrator
- sweeps: expire / purge job functions
- services: component wiring and FastAPI dependencies
- auth_routes: FastAPI routes for /auth/*
- routes: FastAPI routes for /internal/jobs/*
"""

from __future__ import annotations

# Explicit exports for clean imports
__all__ = [
    # Models
    "SignupRecord",
    "ProfileRecord",
    "Challenge",
    "RegisterInput",
    # Errors
    "AccountError",
    "ErrorCode",
    # Components
    "CredentialStore",
    "MemoryCredentialStore",
    "OTPEngine",
    "TokenIssuer",
    "SignupLifecycleManager",
    "PasswordResetOrchestrator",
    "build_services",
    # Routes
    "auth_router",
    "jobs_router",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import pattern for clean module loading."""

    if name in ("SignupRecord", "ProfileRecord", "Challenge", "RegisterInput"):
        from . import models
        return getattr(models, name)

    if name in ("AccountError", "ErrorCode"):
        from . import errors
        return getattr(errors, name)

    if name in ("CredentialStore", "MemoryCredentialStore"):
        from . import store
        return getattr(store, name)

    if name == "OTPEngine":
        from .otp import OTPEngine
        return OTPEngine

    if name == "TokenIssuer":
        from .auth import TokenIssuer
        return TokenIssuer

    if name == "SignupLifecycleManager":
        from .signup import SignupLifecycleManager
        return SignupLifecycleManager

    if name == "PasswordResetOrchestrator":
        from .password_reset import PasswordResetOrchestrator
        return PasswordResetOrchestrator

    if name == "build_services":
        from .services import build_services
        return build_services

    if name == "auth_router":
        from .auth_routes import router
        return router

    if name == "jobs_router":
        from .routes import router
        return router

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
