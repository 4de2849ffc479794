# ignite/accounts/auth.py
"""
Token issuing and password hashing.

This module provides:
- TokenIssuer: short-lived purpose-bound JWTs (PyJWT, HS256)
    - resume token: lets a pending signup continue verification (30 min)
    - reset-session token: gates a password change after a reset OTP (10 min)
- hash_password: bcrypt hashing for stored credentials

Environment Variables:
- JWT_SECRET: Random 32+ character string (REQUIRED)
- JWT_ISSUER: Issuer claim (default: ignite-api)
- JWT_AUDIENCE: Audience claim (default: ignite-app)
- BCRYPT_ROUNDS: bcrypt cost factor (default: 12)

Token Payload:
- sub: signup id (resume) or profile id (reset session)
- purpose: SIGNUP or RESET_PASSWORD
- typ: resume or reset_session
- ver: profile token_version (reset session only)
- iss, aud, iat, exp

Expiry is checked against the issuer's clock rather than PyJWT's wall
clock, so tests can move time without sleeping.
"""

from __future__ import annotations

import os
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

import bcrypt
import jwt

from ignite.privacy_utils import hash_user_id
from ignite.accounts.errors import ErrorCode, TokenError
from ignite.accounts.models import (
    ChallengePurpose,
    RESUME_TOKEN_TTL_MINUTES,
    RESET_SESSION_TTL_MINUTES,
    utcnow,
)

log = logging.getLogger("ignite.auth")

TOKEN_ALGORITHM = "HS256"
TYP_RESUME = "resume"
TYP_RESET_SESSION = "reset_session"

# ============================================================
# Configuration
# ============================================================

def _get_jwt_secret() -> str:
    """Get JWT secret from environment."""
    secret = os.getenv("JWT_SECRET", "").strip()
    if not secret:
        log.error("JWT_SECRET not set - token issuing will fail")
    elif len(secret) < 32:
        log.warning("JWT_SECRET should be at least 32 characters")
    return secret


def _get_bcrypt_rounds() -> int:
    """Get bcrypt cost factor from environment."""
    try:
        return int(os.getenv("BCRYPT_ROUNDS", "12"))
    except ValueError:
        return 12


# ============================================================
# Password Hashing
# ============================================================

def hash_password(password: str, rounds: Optional[int] = None) -> str:
    """
    Hash a password with bcrypt.

    Args:
        password: Plaintext password (at most 72 bytes).
        rounds: Cost factor; defaults to BCRYPT_ROUNDS.

    Returns:
        bcrypt hash as a UTF-8 string.
    """
    salt = bcrypt.gensalt(rounds=rounds or _get_bcrypt_rounds())
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


# ============================================================
# Token Issuer
# ============================================================

class TokenIssuer:
    """
    Mints and validates purpose-bound tokens.

    A resume token is never accepted where a reset-session token is
    expected, and vice versa: both the purpose and typ claims must match.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.secret = secret if secret is not None else _get_jwt_secret()
        self.issuer = issuer or os.getenv("JWT_ISSUER", "ignite-api")
        self.audience = audience or os.getenv("JWT_AUDIENCE", "ignite-app")
        self.clock = clock or utcnow

    def _encode(self, claims: dict, ttl: timedelta) -> Tuple[str, datetime]:
        if not self.secret:
            raise ValueError("JWT_SECRET not configured")
        now = self.clock()
        expires_at = now + ttl
        payload = dict(claims)
        payload.update({
            "iss": self.issuer,
            "aud": self.audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        })
        return jwt.encode(payload, self.secret, algorithm=TOKEN_ALGORITHM), expires_at

    def _decode(self, token: str, purpose: ChallengePurpose, typ: str, error_code: ErrorCode) -> dict:
        if not token or not self.secret:
            raise TokenError(error_code)
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[TOKEN_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": ["sub", "exp", "iat"],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.InvalidTokenError as e:
            log.info("auth.token.invalid typ=%s reason=%s", typ, str(e)[:50])
            raise TokenError(error_code)

        if payload.get("purpose") != purpose.value or payload.get("typ") != typ:
            log.warning("auth.token.wrong_kind expected=%s got=%s", typ, payload.get("typ"))
            raise TokenError(error_code)

        if int(self.clock().timestamp()) >= int(payload["exp"]):
            log.info("auth.token.expired typ=%s sub=%s", typ, hash_user_id(str(payload["sub"])))
            raise TokenError(error_code)

        return payload

    # --- resume tokens ---

    def issue_resume_token(self, signup_id: str) -> str:
        """Mint a 30-minute token bound to a pending signup."""
        token, _ = self._encode(
            {"sub": signup_id, "purpose": ChallengePurpose.SIGNUP.value, "typ": TYP_RESUME},
            timedelta(minutes=RESUME_TOKEN_TTL_MINUTES),
        )
        return token

    def verify_resume_token(self, token: str) -> str:
        """
        Validate a resume token.

        Returns:
            The signup id it was issued for.

        Raises:
            TokenError(RESUME_TOKEN_INVALID) on any failure.
        """
        payload = self._decode(token, ChallengePurpose.SIGNUP, TYP_RESUME, ErrorCode.RESUME_TOKEN_INVALID)
        return str(payload["sub"])

    # --- reset-session tokens ---

    def issue_reset_session_token(self, profile_id: str, token_version: int) -> Tuple[str, int]:
        """
        Mint a 10-minute token that authorizes one password change.

        Returns:
            Tuple of (token, expires_in_seconds).
        """
        ttl = timedelta(minutes=RESET_SESSION_TTL_MINUTES)
        token, _ = self._encode(
            {
                "sub": profile_id,
                "purpose": ChallengePurpose.RESET_PASSWORD.value,
                "typ": TYP_RESET_SESSION,
                "ver": token_version,
            },
            ttl,
        )
        return token, int(ttl.total_seconds())

    def verify_reset_session_token(self, token: str) -> Tuple[str, int]:
        """
        Validate a reset-session token.

        Returns:
            Tuple of (profile_id, token_version claim).

        Raises:
            TokenError(RESET_SESSION_INVALID) on any failure.
        """
        payload = self._decode(
            token, ChallengePurpose.RESET_PASSWORD, TYP_RESET_SESSION, ErrorCode.RESET_SESSION_INVALID
        )
        try:
            version = int(payload.get("ver"))
        except (TypeError, ValueError):
            raise TokenError(ErrorCode.RESET_SESSION_INVALID)
        return str(payload["sub"]), version
