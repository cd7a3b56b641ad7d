from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from entitlements.auth.deps import require_account
from entitlements.core.errors import AlreadyLinked, EntitlementError
from entitlements.core.settings import S
from entitlements.core.time import iso, now_ts, parse_instant
from entitlements.models import CheckoutStartResp, SubscriptionLinkReq, SubscriptionLinkResp
from entitlements.routers.common import http_error
from entitlements.services import checkout_bridge, subscriptions
from entitlements.services.entitlements import PLAN_MONTHLY, cycle_end, normalize_plan
from entitlements.services.users import require_user
from entitlements.webhooks.processor import effective_ends_at, get_adapter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["subscription"])


@router.post("/api/checkout/start", response_model=CheckoutStartResp)
def checkout_start(ctx=Depends(require_account)) -> Dict[str, Any]:
    item = checkout_bridge.start_checkout(ctx["user_sub"])
    return {"started": True, "expires_at": iso(int(item["created_at"]) + S.pending_checkout_ttl_seconds)}


@router.post("/api/subscription/link", response_model=SubscriptionLinkResp)
def link_subscription(body: SubscriptionLinkReq, ctx=Depends(require_account)) -> Dict[str, Any]:
    user_sub = ctx["user_sub"]
    now = now_ts()

    owner = subscriptions.find_user_by_subscription_id(body.subscription_id)
    if owner and owner != user_sub:
        raise HTTPException(409, "Subscription is linked to another account")

    adapter = get_adapter(body.provider)
    try:
        if body.billing_cycle:
            plan = normalize_plan(body.billing_cycle) or PLAN_MONTHLY
            ends_at = parse_instant(body.ends_at) or cycle_end(plan, now)
            signal = subscriptions.SIGNAL_ACTIVATED
        else:
            event = adapter.normalize_subscription(adapter.fetch_subscription(body.subscription_id))
            if event.user_ref and event.user_ref != user_sub:
                raise HTTPException(403, "Subscription belongs to another account")
            subscriptions.link_account(body.provider, event.account_id, user_sub)
            plan, signal, ends_at = event.plan, event.signal, effective_ends_at(event, now)

        subscriptions.link_subscription(
            user_sub,
            provider=body.provider,
            subscription_id=body.subscription_id,
            plan=plan,
            signal=signal,
            ends_at=ends_at,
            now=now,
        )
    except AlreadyLinked:
        return {"linked": False, "reason": "already_linked"}
    except EntitlementError as exc:
        raise http_error(exc) from exc

    logger.info("subscription linked by user user_sub=%s provider=%s order=%s", user_sub, body.provider, body.order_id)
    return {"linked": True, "subscription": subscriptions.subscription_view(require_user(user_sub), now=now)}


@router.get("/api/subscription/entitlements")
def get_entitlements(ctx=Depends(require_account)) -> Dict[str, Any]:
    return subscriptions.subscription_view(require_user(ctx["user_sub"]))
