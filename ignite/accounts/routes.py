# ignite/accounts/routes.py
"""
Internal maintenance routes for the account sweeps.

Endpoints:
- POST /internal/jobs/expire-stale-signups: PENDING > 7 days → EXPIRED
- POST /internal/jobs/purge-expired-accounts: EXPIRED > 15 days → deleted
- GET /internal/jobs/purgeable-accounts: count for monitoring

Feature Flag:
- JOBS_ENDPOINTS_ENABLED: Must be "on" for routes to function (503 otherwise)

These routes let an external cron trigger the sweeps when the in-process
scheduler is off. They are hidden from the OpenAPI schema and must sit
behind the deployment's internal network boundary.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ConfigDict
from typing import List

from ignite.db import is_jobs_endpoints_enabled
from ignite.accounts.services import AccountServices, get_services
from ignite.accounts.sweeps import (
    SweepReport,
    expire_stale_signups,
    purge_expired_accounts,
    count_purgeable_accounts,
)

log = logging.getLogger("ignite.jobs_routes")

# ============================================================
# Router Setup
# ============================================================

router = APIRouter(prefix="/internal/jobs", tags=["Internal"], include_in_schema=False)


class SweepResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job: str
    count: int
    ids: List[str] = Field(default_factory=list)
    dry_run: bool = Field(default=False, alias="dryRun")

    @classmethod
    def from_report(cls, report: SweepReport) -> "SweepResponse":
        return cls(job=report.job, count=report.count, ids=report.ids, dry_run=report.dry_run)


# ============================================================
# Feature Flag Guard
# ============================================================

def check_jobs_enabled():
    """
    Dependency to check if job endpoints are enabled.

    Raises HTTPException 503 if JOBS_ENDPOINTS_ENABLED != "on".
    """
    if not is_jobs_endpoints_enabled():
        log.info("Job endpoints disabled (JOBS_ENDPOINTS_ENABLED=off)")
        raise HTTPException(
            status_code=503,
            detail={
                "code": "JOBS_DISABLED",
                "message": "Job endpoints are currently disabled",
            },
        )


# ============================================================
# Endpoints
# ============================================================

@router.post("/expire-stale-signups", response_model=SweepResponse)
def expire_stale_signups_endpoint(
    dry_run: bool = Query(False, alias="dryRun"),
    services: AccountServices = Depends(get_services),
    _: None = Depends(check_jobs_enabled),
) -> SweepResponse:
    report = expire_stale_signups(services.store, services.clock(), dry_run=dry_run)
    return SweepResponse.from_report(report)


@router.post("/purge-expired-accounts", response_model=SweepResponse)
def purge_expired_accounts_endpoint(
    dry_run: bool = Query(False, alias="dryRun"),
    services: AccountServices = Depends(get_services),
    _: None = Depends(check_jobs_enabled),
) -> SweepResponse:
    report = purge_expired_accounts(services.store, services.clock(), dry_run=dry_run)
    return SweepResponse.from_report(report)


@router.get("/purgeable-accounts")
def purgeable_accounts_endpoint(
    services: AccountServices = Depends(get_services),
    _: None = Depends(check_jobs_enabled),
) -> dict:
    return {"count": count_purgeable_accounts(services.store, services.clock())}
