from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from entitlements.auth.deps import require_cron
from entitlements.core.errors import StoreUnavailable
from entitlements.metrics import record_job
from entitlements.services import credits, sweeper

logger = logging.getLogger(__name__)

router = APIRouter(tags=["cron"], dependencies=[Depends(require_cron)])


@router.get("/api/cron/reconcile")
@router.post("/api/cron/reconcile")
def run_reconcile() -> Dict[str, Any]:
    try:
        stats = sweeper.sweep()
    except StoreUnavailable as exc:
        logger.exception("reconciliation sweep aborted")
        raise HTTPException(500, "Sweep failed") from exc
    record_job("reconcile", stats)
    return {"ok": True, **stats}


@router.get("/api/cron/daily-recharge")
@router.post("/api/cron/daily-recharge")
def run_daily_recharge() -> Dict[str, Any]:
    try:
        stats = credits.process_daily_recharge_for_all_users()
    except StoreUnavailable as exc:
        logger.exception("daily recharge aborted")
        raise HTTPException(500, "Recharge failed") from exc
    record_job("daily_recharge", stats)
    return {"ok": True, **stats}
