# ignite/privacy_utils.py
"""
Privacy utilities for account logging.

Centralized PII masking so no raw email, institutional id or account id
reaches the logs while lines stay useful for correlating events.

Functions:
- mask_email(email): jo**@example.com
- mask_institutional_id(zid): z12****67
- hash_user_id(user_id): first 8 chars of SHA-256
- truncate_request_id(request_id): first 8 chars

Privacy Rails:
- Never log raw emails (use mask_email)
- Never log raw signup/profile ids (use hash_user_id)
- Never log OTPs or tokens (the stub notifier in development is the only
  exception for OTPs)
"""

from __future__ import annotations

from hashlib import sha256

# ============================================================
# Email Masking
# ============================================================

def mask_email(email: str) -> str:
    """
    Mask email for logs: john@example.com → jo**@example.com

    Examples:
        mask_email("john@example.com") → "jo**@example.com"
        mask_email("ab@example.com") → "**@example.com"
        mask_email(None) → "***"
        mask_email("invalid") → "***"
    """
    if not email or not isinstance(email, str):
        return "***"

    email = email.strip()
    if "@" not in email:
        return "***"

    local, domain = email.rsplit("@", 1)
    if len(local) <= 2:
        return f"**@{domain}"
    return f"{local[:2]}**@{domain}"


def mask_institutional_id(institutional_id: str) -> str:
    """Mask institutional id: z1234567 → z12****67"""
    if not institutional_id or not isinstance(institutional_id, str) or len(institutional_id) < 6:
        return "****"
    return f"{institutional_id[:3]}****{institutional_id[-2:]}"


# ============================================================
# ID Hashing
# ============================================================

def hash_user_id(user_id: str) -> str:
    """
    Hash an account id for logs: full UUID → first 8 chars of SHA-256.

    Returns "anon" when no id is given.
    """
    if not user_id or not isinstance(user_id, str):
        return "anon"

    user_id = user_id.strip()
    if not user_id:
        return "anon"

    return sha256(user_id.encode("utf-8")).hexdigest()[:8]


def truncate_request_id(request_id: str, length: int = 8) -> str:
    """Truncate request ID for log readability."""
    if not request_id or not isinstance(request_id, str):
        return "unknown"
    return request_id[:length]
