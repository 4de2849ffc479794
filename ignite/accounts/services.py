# ignite/accounts/services.py
"""
Wiring for the account components.

build_services() assembles store, notifier, clock, token issuer, OTP
engine, signup manager, reset orchestrator and sweep scheduler into one
AccountServices container. The FastAPI app keeps it on app.state and
routes pull pieces out through Depends.
"""

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable, Optional

from fastapi import Request

from ignite.db import get_app_timezone
from ignite.scheduler import SweepScheduler, build_sweep_scheduler
from ignite.accounts.auth import TokenIssuer
from ignite.accounts.models import utcnow
from ignite.accounts.otp import OTPEngine, OTPService, get_otp_service
from ignite.accounts.password_reset import PasswordResetOrchestrator
from ignite.accounts.signup import SignupLifecycleManager
from ignite.accounts.store import CredentialStore, get_credential_store


@dataclass
class AccountServices:
    store: CredentialStore
    otp_service: OTPService
    clock: Callable[[], datetime]
    tokens: TokenIssuer
    otp: OTPEngine
    signups: SignupLifecycleManager
    password_reset: PasswordResetOrchestrator
    scheduler: SweepScheduler


def build_services(
    store: Optional[CredentialStore] = None,
    otp_service: Optional[OTPService] = None,
    clock: Optional[Callable[[], datetime]] = None,
    tokens: Optional[TokenIssuer] = None,
    timezone: Optional[tzinfo] = None,
) -> AccountServices:
    """
    Build the account component graph.

    Args:
        store: Credential store; defaults to get_credential_store().
        otp_service: Notifier; defaults to get_otp_service() (OTP_PROVIDER).
        clock: Returns aware UTC now; defaults to the wall clock.
        tokens: Token issuer; defaults to one configured from JWT_* env.
        timezone: Calendar-day zone; defaults to APP_TIMEZONE.
    """
    store = store or get_credential_store()
    otp_service = otp_service or get_otp_service()
    clock = clock or utcnow
    timezone = timezone or get_app_timezone()
    tokens = tokens or TokenIssuer(clock=clock)

    otp = OTPEngine(store, otp_service, clock=clock, timezone=timezone)
    return AccountServices(
        store=store,
        otp_service=otp_service,
        clock=clock,
        tokens=tokens,
        otp=otp,
        signups=SignupLifecycleManager(store, otp, tokens, clock=clock),
        password_reset=PasswordResetOrchestrator(store, otp, tokens, clock=clock),
        scheduler=build_sweep_scheduler(store, clock=clock, timezone=timezone),
    )


# ============================================================
# FastAPI Dependencies
# ============================================================

def get_services(request: Request) -> AccountServices:
    return request.app.state.services


def get_signup_manager(request: Request) -> SignupLifecycleManager:
    return get_services(request).signups


def get_password_reset(request: Request) -> PasswordResetOrchestrator:
    return get_services(request).password_reset
