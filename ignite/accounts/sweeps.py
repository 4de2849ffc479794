# ignite/accounts/sweeps.py
"""
Daily maintenance sweeps over user_signups.

Jobs:
- expire_stale_signups: PENDING_VERIFICATION older than 7 days → EXPIRED
- purge_expired_accounts: EXPIRED untouched for 15 days → hard delete

Both take an explicit `now` and are idempotent: running a job twice in a
row changes nothing the second time. With dry_run=True they only report
which rows would be affected.

Revival (signup.register) only touches EXPIRED rows and resets
updated_at, so a revived row never matches the purge predicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List

from ignite.accounts.models import (
    ChallengePurpose,
    SignupStatus,
    SIGNUP_EXPIRY_DAYS,
    EXPIRED_PURGE_DAYS,
)
from ignite.accounts.store import CredentialStore

log = logging.getLogger("ignite.sweeps")


@dataclass
class SweepReport:
    """Summary of one sweep run."""

    job: str
    count: int = 0
    ids: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {"job": self.job, "count": self.count, "ids": list(self.ids), "dry_run": self.dry_run}


def expire_stale_signups(store: CredentialStore, now: datetime, dry_run: bool = False) -> SweepReport:
    """
    Expire signups still pending after SIGNUP_EXPIRY_DAYS.

    Matching rows become EXPIRED (updated_at=now) and their SIGNUP
    challenges are deleted.
    """
    cutoff = now - timedelta(days=SIGNUP_EXPIRY_DAYS)
    stale = store.list_signups(SignupStatus.PENDING_VERIFICATION, created_before=cutoff)
    ids = [s.id for s in stale]
    report = SweepReport(job="expire_stale_signups", ids=ids, dry_run=dry_run)

    if dry_run or not ids:
        report.count = len(ids)
        log.info("sweeps.expire.summary count=%d dry_run=%s", report.count, dry_run)
        return report

    report.count = store.mark_signups_expired(ids, now)
    store.delete_challenges(ids, ChallengePurpose.SIGNUP)
    log.info("sweeps.expire.summary count=%d dry_run=%s", report.count, dry_run)
    return report


def purge_expired_accounts(store: CredentialStore, now: datetime, dry_run: bool = False) -> SweepReport:
    """
    Hard-delete signups that stayed EXPIRED for EXPIRED_PURGE_DAYS.

    Dependent challenges go first, then the signup rows.
    """
    cutoff = now - timedelta(days=EXPIRED_PURGE_DAYS)
    doomed = store.list_signups(SignupStatus.EXPIRED, updated_before=cutoff)
    ids = [s.id for s in doomed]
    report = SweepReport(job="purge_expired_accounts", ids=ids, dry_run=dry_run)

    if dry_run or not ids:
        report.count = len(ids)
        log.info("sweeps.purge.summary count=%d dry_run=%s", report.count, dry_run)
        return report

    store.delete_challenges(ids, ChallengePurpose.SIGNUP)
    report.count = store.delete_signups(ids)
    log.info("sweeps.purge.summary count=%d dry_run=%s", report.count, dry_run)
    return report


def count_purgeable_accounts(store: CredentialStore, now: datetime) -> int:
    """Number of EXPIRED signups the next purge would delete."""
    cutoff = now - timedelta(days=EXPIRED_PURGE_DAYS)
    return len(store.list_signups(SignupStatus.EXPIRED, updated_before=cutoff))
