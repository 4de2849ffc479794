#!/usr/bin/env python3
# scripts/sweep_jobs.py
"""
Account sweep jobs: daily signup expiry and purge.

Runs nightly via cron (expire at 02:00, purge at 02:30 Australia/Sydney)
when the in-process scheduler is not enabled. Same job functions as the
scheduler and the /internal/jobs routes.

Behavior:
- expire: PENDING_VERIFICATION signups older than 7 days → EXPIRED
          (their signup codes are deleted)
- purge:  EXPIRED signups untouched for 15 days → hard deleted
- all:    expire, then purge (a failed job does not stop the other)

Usage:
    # Dry run (no changes)
    python scripts/sweep_jobs.py --dry-run

    # Only expire stale signups
    python scripts/sweep_jobs.py --job expire

    # Verbose output
    python scripts/sweep_jobs.py --verbose

Cron example (one line per job, host clock in Australia/Sydney):
    0 2 * * * /path/to/venv/bin/python /path/to/scripts/sweep_jobs.py --job expire >> /var/log/sweeps.log 2>&1
    30 2 * * * /path/to/venv/bin/python /path/to/scripts/sweep_jobs.py --job purge >> /var/log/sweeps.log 2>&1

Environment Variables Required:
    SUPABASE_URL: Database URL
    SUPABASE_KEY: Service role key

Exit codes: 0 success, 1 if any job failed.
"""

from __future__ import annotations

import os
import sys
import argparse
import logging
from datetime import datetime
from typing import Any, Dict, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ignite.db import is_supabase_configured  # noqa: E402
from ignite.accounts.models import utcnow  # noqa: E402
from ignite.accounts.store import CredentialStore, SupabaseCredentialStore  # noqa: E402
from ignite.accounts.sweeps import expire_stale_signups, purge_expired_accounts  # noqa: E402

log = logging.getLogger("sweep_jobs")

JOBS = {
    "expire": expire_stale_signups,
    "purge": purge_expired_accounts,
}
JOB_ORDER = ["expire", "purge"]


# ============================================================
# Main Entry Point
# ============================================================

def run_sweep_jobs(
    job: str = "all",
    dry_run: bool = False,
    verbose: bool = False,
    store: Optional[CredentialStore] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Run one or both sweeps.

    Args:
        job: "expire", "purge" or "all"
        dry_run: If True, report matching rows without changing them
        verbose: If True, enable debug logging
        store: Credential store; defaults to the Supabase store
        now: Reference time; defaults to the current UTC time

    Returns:
        Summary of job execution
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    start_time = utcnow()
    now = now or start_time
    names = JOB_ORDER if job == "all" else [job]

    log.info("=" * 60)
    log.info("SWEEP JOBS STARTED: %s", ",".join(names))
    log.info("Mode: %s", "DRY RUN" if dry_run else "LIVE")
    log.info("=" * 60)

    if store is None:
        if not is_supabase_configured():
            log.error("SUPABASE_URL and SUPABASE_KEY environment variables required")
            return {"status": "error", "message": "Database not configured"}
        store = SupabaseCredentialStore()

    summary: Dict[str, Any] = {"status": "success", "dry_run": dry_run, "jobs": {}}
    for name in names:
        # One failing job must not stop the next
        try:
            report = JOBS[name](store, now, dry_run=dry_run)
        except Exception as e:
            log.exception("Sweep %s failed", name)
            summary["status"] = "error"
            summary["jobs"][name] = {"status": "error", "message": str(e)[:200]}
            continue
        summary["jobs"][name] = dict(report.to_dict(), status="success")
        log.info("%s: %d row(s)%s", report.job, report.count, " (dry run)" if dry_run else "")
        for signup_id in report.ids:
            log.debug("  %s", signup_id)

    summary["duration_ms"] = int((utcnow() - start_time).total_seconds() * 1000)
    summary["timestamp"] = now.isoformat()
    log.info("SWEEP JOBS %s in %dms", summary["status"].upper(), summary["duration_ms"])
    return summary


def main(argv=None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Expire stale signups and purge long-expired ones"
    )
    parser.add_argument(
        "--job",
        choices=["expire", "purge", "all"],
        default="all",
        help="Which sweep to run (default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Preview changes without executing",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) output",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    summary = run_sweep_jobs(job=args.job, dry_run=args.dry_run, verbose=args.verbose)
    return 1 if summary.get("status") == "error" else 0


if __name__ == "__main__":
    sys.exit(main())
