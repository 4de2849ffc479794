# ignite/accounts/store.py
"""
Credential store: persistence for signups, profiles and OTP challenges.

This module provides:
- CredentialStore: abstract interface consumed by every account component
- MemoryCredentialStore: thread-safe in-process store (development, tests)
- SupabaseCredentialStore: supabase-py (PostgREST) backed store
- get_credential_store(): picks the backend from the environment

Uniqueness rules enforced by every backend:
- At most one PENDING_VERIFICATION signup per email
- At most one PENDING_VERIFICATION signup per institutional id
- At most one challenge per (owner_id, purpose)

A violated signup rule raises DuplicateRecordError so callers can resolve
the race the same way as a detected conflict.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ignite.db import (
    get_supabase_client,
    is_supabase_configured,
    TABLE_SIGNUPS,
    TABLE_PROFILES,
    TABLE_OTPS,
)
from ignite.accounts.models import (
    SignupRecord,
    SignupStatus,
    ProfileRecord,
    Challenge,
    ChallengePurpose,
)

log = logging.getLogger("ignite.store")

# Postgres unique_violation
PG_UNIQUE_VIOLATION = "23505"


class DuplicateRecordError(Exception):
    """Raised when a write would break a uniqueness rule."""


# ============================================================
# Abstract Store
# ============================================================

class CredentialStore(ABC):
    """
    Persistence boundary for the account lifecycle.

    All methods return copies; mutating a returned model has no effect
    until it is written back with the matching update/save call.
    """

    backend_name = "abstract"

    # --- signups ---

    @abstractmethod
    def get_signup(self, signup_id: str) -> Optional[SignupRecord]:
        pass

    @abstractmethod
    def find_signup_by_email(self, email: str, status: SignupStatus) -> Optional[SignupRecord]:
        pass

    @abstractmethod
    def find_signup_by_institutional_id(
        self, institutional_id: str, status: SignupStatus
    ) -> Optional[SignupRecord]:
        pass

    @abstractmethod
    def insert_signup(self, signup: SignupRecord) -> SignupRecord:
        pass

    @abstractmethod
    def update_signup(self, signup: SignupRecord) -> SignupRecord:
        pass

    @abstractmethod
    def list_signups(
        self,
        status: SignupStatus,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[SignupRecord]:
        pass

    @abstractmethod
    def mark_signups_expired(self, signup_ids: List[str], now: datetime) -> int:
        pass

    @abstractmethod
    def delete_signups(self, signup_ids: List[str]) -> int:
        pass

    # --- profiles ---

    @abstractmethod
    def get_profile(self, profile_id: str) -> Optional[ProfileRecord]:
        pass

    @abstractmethod
    def find_profile_by_email(self, email: str) -> Optional[ProfileRecord]:
        pass

    @abstractmethod
    def find_profile_by_institutional_id(self, institutional_id: str) -> Optional[ProfileRecord]:
        pass

    @abstractmethod
    def insert_profile(self, profile: ProfileRecord) -> ProfileRecord:
        pass

    @abstractmethod
    def update_profile(self, profile: ProfileRecord) -> ProfileRecord:
        pass

    # --- challenges ---

    @abstractmethod
    def get_challenge(self, owner_id: str, purpose: ChallengePurpose) -> Optional[Challenge]:
        pass

    @abstractmethod
    def save_challenge(self, challenge: Challenge) -> Challenge:
        """Insert or replace the challenge for (owner_id, purpose)."""
        pass

    @abstractmethod
    def delete_challenge(self, owner_id: str, purpose: ChallengePurpose) -> bool:
        pass

    @abstractmethod
    def delete_challenges(self, owner_ids: List[str], purpose: ChallengePurpose) -> int:
        pass

    # --- health ---

    @abstractmethod
    def ping(self) -> None:
        """Raise if the backend is unreachable."""
        pass


# ============================================================
# In-Memory Implementation
# ============================================================

class MemoryCredentialStore(CredentialStore):
    """
    Dictionary-backed store guarded by a single lock.

    Each call is atomic, matching the row-level guarantees the
    Supabase backend gets from Postgres.
    """

    backend_name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._signups: Dict[str, SignupRecord] = {}
        self._profiles: Dict[str, ProfileRecord] = {}
        self._challenges: Dict[Tuple[str, ChallengePurpose], Challenge] = {}

    # --- signups ---

    def _pending_conflict(self, signup: SignupRecord) -> Optional[SignupRecord]:
        if not signup.is_pending:
            return None
        for other in self._signups.values():
            if other.id == signup.id or not other.is_pending:
                continue
            if other.email == signup.email or other.institutional_id == signup.institutional_id:
                return other
        return None

    def get_signup(self, signup_id: str) -> Optional[SignupRecord]:
        with self._lock:
            found = self._signups.get(signup_id)
            return found.model_copy(deep=True) if found else None

    def _find_signup(self, field: str, value: str, status: SignupStatus) -> Optional[SignupRecord]:
        with self._lock:
            matches = [
                s for s in self._signups.values()
                if getattr(s, field) == value and s.status == status
            ]
            if not matches:
                return None
            newest = max(matches, key=lambda s: s.created_at)
            return newest.model_copy(deep=True)

    def find_signup_by_email(self, email: str, status: SignupStatus) -> Optional[SignupRecord]:
        return self._find_signup("email", email, status)

    def find_signup_by_institutional_id(
        self, institutional_id: str, status: SignupStatus
    ) -> Optional[SignupRecord]:
        return self._find_signup("institutional_id", institutional_id, status)

    def insert_signup(self, signup: SignupRecord) -> SignupRecord:
        with self._lock:
            if signup.id in self._signups:
                raise DuplicateRecordError(f"signup {signup.id} exists")
            if self._pending_conflict(signup):
                raise DuplicateRecordError("pending signup exists for email or institutional id")
            self._signups[signup.id] = signup.model_copy(deep=True)
            return signup.model_copy(deep=True)

    def update_signup(self, signup: SignupRecord) -> SignupRecord:
        with self._lock:
            if signup.id not in self._signups:
                raise KeyError(signup.id)
            if self._pending_conflict(signup):
                raise DuplicateRecordError("pending signup exists for email or institutional id")
            self._signups[signup.id] = signup.model_copy(deep=True)
            return signup.model_copy(deep=True)

    def list_signups(
        self,
        status: SignupStatus,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[SignupRecord]:
        with self._lock:
            rows = []
            for s in self._signups.values():
                if s.status != status:
                    continue
                if created_before is not None and not s.created_at < created_before:
                    continue
                if updated_before is not None and not s.updated_at < updated_before:
                    continue
                rows.append(s.model_copy(deep=True))
            return sorted(rows, key=lambda s: s.created_at)

    def mark_signups_expired(self, signup_ids: List[str], now: datetime) -> int:
        with self._lock:
            count = 0
            for signup_id in signup_ids:
                s = self._signups.get(signup_id)
                if s is None or not s.is_pending:
                    continue
                s.status = SignupStatus.EXPIRED
                s.email_verified_at = None
                s.updated_at = now
                count += 1
            return count

    def delete_signups(self, signup_ids: List[str]) -> int:
        with self._lock:
            return sum(1 for sid in signup_ids if self._signups.pop(sid, None) is not None)

    # --- profiles ---

    def get_profile(self, profile_id: str) -> Optional[ProfileRecord]:
        with self._lock:
            found = self._profiles.get(profile_id)
            return found.model_copy(deep=True) if found else None

    def _find_profile(self, field: str, value: str) -> Optional[ProfileRecord]:
        with self._lock:
            for p in self._profiles.values():
                if getattr(p, field) == value:
                    return p.model_copy(deep=True)
            return None

    def find_profile_by_email(self, email: str) -> Optional[ProfileRecord]:
        return self._find_profile("email", email)

    def find_profile_by_institutional_id(self, institutional_id: str) -> Optional[ProfileRecord]:
        return self._find_profile("institutional_id", institutional_id)

    def _profile_conflict(self, profile: ProfileRecord) -> bool:
        return any(
            p.id != profile.id
            and (p.email == profile.email or p.institutional_id == profile.institutional_id)
            for p in self._profiles.values()
        )

    def insert_profile(self, profile: ProfileRecord) -> ProfileRecord:
        with self._lock:
            if profile.id in self._profiles or self._profile_conflict(profile):
                raise DuplicateRecordError("profile exists for email or institutional id")
            self._profiles[profile.id] = profile.model_copy(deep=True)
            return profile.model_copy(deep=True)

    def update_profile(self, profile: ProfileRecord) -> ProfileRecord:
        with self._lock:
            if profile.id not in self._profiles:
                raise KeyError(profile.id)
            if self._profile_conflict(profile):
                raise DuplicateRecordError("profile exists for email or institutional id")
            self._profiles[profile.id] = profile.model_copy(deep=True)
            return profile.model_copy(deep=True)

    # --- challenges ---

    def get_challenge(self, owner_id: str, purpose: ChallengePurpose) -> Optional[Challenge]:
        with self._lock:
            found = self._challenges.get((owner_id, purpose))
            return found.model_copy(deep=True) if found else None

    def save_challenge(self, challenge: Challenge) -> Challenge:
        with self._lock:
            key = (challenge.owner_id, challenge.purpose)
            existing = self._challenges.get(key)
            stored = challenge.model_copy(deep=True)
            if existing is not None:
                stored.id = existing.id
                stored.created_at = existing.created_at
            self._challenges[key] = stored
            return stored.model_copy(deep=True)

    def delete_challenge(self, owner_id: str, purpose: ChallengePurpose) -> bool:
        with self._lock:
            return self._challenges.pop((owner_id, purpose), None) is not None

    def delete_challenges(self, owner_ids: List[str], purpose: ChallengePurpose) -> int:
        with self._lock:
            return sum(
                1 for owner_id in owner_ids
                if self._challenges.pop((owner_id, purpose), None) is not None
            )

    def ping(self) -> None:
        return None


# ============================================================
# Supabase Implementation
# ============================================================

def _is_unique_violation(exc: Exception) -> bool:
    code = getattr(exc, "code", None)
    return code == PG_UNIQUE_VIOLATION or PG_UNIQUE_VIOLATION in str(exc)


def _first(result) -> Optional[dict]:
    if result.data and len(result.data) > 0:
        return result.data[0]
    return None


class SupabaseCredentialStore(CredentialStore):
    """
    PostgREST-backed store.

    Uniqueness is enforced by partial unique indexes on user_signups
    (status = 'PENDING_VERIFICATION') and a unique (owner_id, purpose)
    constraint on user_otps.
    """

    backend_name = "supabase"

    def __init__(self, client=None):
        self.client = client or get_supabase_client()
        if self.client is None:
            raise RuntimeError("Supabase client not configured")

    def _table(self, name: str):
        return self.client.table(name)

    # --- signups ---

    def get_signup(self, signup_id: str) -> Optional[SignupRecord]:
        result = self._table(TABLE_SIGNUPS)\
            .select("*")\
            .eq("id", signup_id)\
            .limit(1)\
            .execute()
        row = _first(result)
        return SignupRecord.from_db_row(row) if row else None

    def _find_signup(self, column: str, value: str, status: SignupStatus) -> Optional[SignupRecord]:
        result = self._table(TABLE_SIGNUPS)\
            .select("*")\
            .eq(column, value)\
            .eq("status", status.value)\
            .order("created_at", desc=True)\
            .limit(1)\
            .execute()
        row = _first(result)
        return SignupRecord.from_db_row(row) if row else None

    def find_signup_by_email(self, email: str, status: SignupStatus) -> Optional[SignupRecord]:
        return self._find_signup("signup_email", email, status)

    def find_signup_by_institutional_id(
        self, institutional_id: str, status: SignupStatus
    ) -> Optional[SignupRecord]:
        return self._find_signup("zid", institutional_id, status)

    def insert_signup(self, signup: SignupRecord) -> SignupRecord:
        try:
            result = self._table(TABLE_SIGNUPS).insert(signup.to_db_row()).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(str(e)[:100]) from e
            raise
        row = _first(result)
        return SignupRecord.from_db_row(row) if row else signup

    def update_signup(self, signup: SignupRecord) -> SignupRecord:
        values = signup.to_db_row()
        values.pop("id")
        try:
            result = self._table(TABLE_SIGNUPS)\
                .update(values)\
                .eq("id", signup.id)\
                .execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(str(e)[:100]) from e
            raise
        row = _first(result)
        return SignupRecord.from_db_row(row) if row else signup

    def list_signups(
        self,
        status: SignupStatus,
        created_before: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
    ) -> List[SignupRecord]:
        query = self._table(TABLE_SIGNUPS)\
            .select("*")\
            .eq("status", status.value)
        if created_before is not None:
            query = query.lt("created_at", created_before.isoformat())
        if updated_before is not None:
            query = query.lt("updated_at", updated_before.isoformat())
        result = query.order("created_at").execute()
        return [SignupRecord.from_db_row(row) for row in (result.data or [])]

    def mark_signups_expired(self, signup_ids: List[str], now: datetime) -> int:
        if not signup_ids:
            return 0
        result = self._table(TABLE_SIGNUPS)\
            .update({
                "status": SignupStatus.EXPIRED.value,
                "email_verified_at": None,
                "updated_at": now.isoformat(),
            })\
            .in_("id", signup_ids)\
            .eq("status", SignupStatus.PENDING_VERIFICATION.value)\
            .execute()
        return len(result.data or [])

    def delete_signups(self, signup_ids: List[str]) -> int:
        if not signup_ids:
            return 0
        result = self._table(TABLE_SIGNUPS)\
            .delete()\
            .in_("id", signup_ids)\
            .execute()
        return len(result.data or [])

    # --- profiles ---

    def get_profile(self, profile_id: str) -> Optional[ProfileRecord]:
        result = self._table(TABLE_PROFILES)\
            .select("*")\
            .eq("id", profile_id)\
            .limit(1)\
            .execute()
        row = _first(result)
        return ProfileRecord.from_db_row(row) if row else None

    def _find_profile(self, column: str, value: str) -> Optional[ProfileRecord]:
        result = self._table(TABLE_PROFILES)\
            .select("*")\
            .eq(column, value)\
            .limit(1)\
            .execute()
        row = _first(result)
        return ProfileRecord.from_db_row(row) if row else None

    def find_profile_by_email(self, email: str) -> Optional[ProfileRecord]:
        return self._find_profile("email", email)

    def find_profile_by_institutional_id(self, institutional_id: str) -> Optional[ProfileRecord]:
        return self._find_profile("zid", institutional_id)

    def insert_profile(self, profile: ProfileRecord) -> ProfileRecord:
        try:
            result = self._table(TABLE_PROFILES).insert(profile.to_db_row()).execute()
        except Exception as e:
            if _is_unique_violation(e):
                raise DuplicateRecordError(str(e)[:100]) from e
            raise
        row = _first(result)
        return ProfileRecord.from_db_row(row) if row else profile

    def update_profile(self, profile: ProfileRecord) -> ProfileRecord:
        values = profile.to_db_row()
        values.pop("id")
        values.pop("created_at")
        result = self._table(TABLE_PROFILES)\
            .update(values)\
            .eq("id", profile.id)\
            .execute()
        row = _first(result)
        return ProfileRecord.from_db_row(row) if row else profile

    # --- challenges ---

    def get_challenge(self, owner_id: str, purpose: ChallengePurpose) -> Optional[Challenge]:
        result = self._table(TABLE_OTPS)\
            .select("*")\
            .eq("owner_id", owner_id)\
            .eq("purpose", purpose.value)\
            .limit(1)\
            .execute()
        row = _first(result)
        return Challenge.from_db_row(row) if row else None

    def save_challenge(self, challenge: Challenge) -> Challenge:
        values = challenge.to_db_row()
        values.pop("id")
        values.pop("created_at")
        result = self._table(TABLE_OTPS)\
            .upsert(values, on_conflict="owner_id,purpose")\
            .execute()
        row = _first(result)
        return Challenge.from_db_row(row) if row else challenge

    def delete_challenge(self, owner_id: str, purpose: ChallengePurpose) -> bool:
        result = self._table(TABLE_OTPS)\
            .delete()\
            .eq("owner_id", owner_id)\
            .eq("purpose", purpose.value)\
            .execute()
        return bool(result.data)

    def delete_challenges(self, owner_ids: List[str], purpose: ChallengePurpose) -> int:
        if not owner_ids:
            return 0
        result = self._table(TABLE_OTPS)\
            .delete()\
            .in_("owner_id", owner_ids)\
            .eq("purpose", purpose.value)\
            .execute()
        return len(result.data or [])

    def ping(self) -> None:
        self._table(TABLE_PROFILES).select("id").limit(1).execute()


# ============================================================
# Factory
# ============================================================

def get_credential_store() -> CredentialStore:
    """
    Build the store for this process.

    Returns:
        SupabaseCredentialStore when SUPABASE_URL and SUPABASE_KEY are set,
        otherwise a fresh MemoryCredentialStore.
    """
    if is_supabase_configured():
        return SupabaseCredentialStore()
    log.warning("SUPABASE_URL/SUPABASE_KEY not set, using in-memory credential store")
    return MemoryCredentialStore()
