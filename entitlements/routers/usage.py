from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from entitlements.auth.deps import require_account
from entitlements.core.errors import EntitlementError
from entitlements.core.settings import S
from entitlements.metrics import record_denial
from entitlements.models import BalanceResp, GenerationReq, StarterKitEligibilityResp
from entitlements.routers.common import http_error
from entitlements.services import credits, daily_usage, generation_gate
from entitlements.services.entitlements import resolve_user
from entitlements.services.users import require_user

router = APIRouter(tags=["usage"])

_DENIAL_STATUS = {
    generation_gate.REASON_LOCKED: 403,
    generation_gate.REASON_QUOTA: 429,
    generation_gate.REASON_CREDITS: 402,
}


@router.get("/api/usage/daily")
def get_daily_usage(
    character_id: Optional[str] = Query(default=None),
    ctx=Depends(require_account),
) -> Dict[str, Any]:
    user = require_user(ctx["user_sub"])
    tier = resolve_user(user).tier
    if daily_usage.quota_mode(tier) == daily_usage.MODE_PER_CHARACTER and not character_id:
        character_id = user.get("active_character_id")
        if not character_id:
            raise HTTPException(400, "character_id is required for per-character quotas")
    try:
        return daily_usage.get_daily_usage(ctx["user_sub"], user.get("timezone"), tier, character_id=character_id)
    except EntitlementError as exc:
        raise http_error(exc) from exc


@router.get("/api/credits/balance", response_model=BalanceResp)
def get_balance(ctx=Depends(require_account)) -> Dict[str, Any]:
    return credits.get_balance(ctx["user_sub"])


@router.get("/api/credits/starter-kit-eligibility", response_model=StarterKitEligibilityResp)
def starter_kit_eligibility(ctx=Depends(require_account)) -> Dict[str, Any]:
    return {"eligible": credits.can_purchase_starter_kit(ctx["user_sub"]), "credits": S.starter_kit_credits}


@router.post("/api/generation/authorize")
def authorize_generation(body: GenerationReq, ctx=Depends(require_account)) -> Dict[str, Any]:
    try:
        decision = generation_gate.authorize(ctx["user_sub"], body.usage_type, character_id=body.character_id)
    except EntitlementError as exc:
        raise http_error(exc) from exc
    if not decision.allowed:
        record_denial(decision.reason)
        raise HTTPException(_DENIAL_STATUS.get(decision.reason, 403), detail=decision.to_dict())
    return decision.to_dict()


@router.post("/api/generation/complete")
def complete_generation(body: GenerationReq, ctx=Depends(require_account)) -> Dict[str, Any]:
    try:
        return generation_gate.complete(ctx["user_sub"], body.usage_type, character_id=body.character_id)
    except EntitlementError as exc:
        raise http_error(exc) from exc
