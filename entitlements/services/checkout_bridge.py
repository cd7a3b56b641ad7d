from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from entitlements.core.settings import S
from entitlements.core.store import as_int, get_item, is_conditional_failure, store_errors, with_ttl
from entitlements.core.tables import T
from entitlements.core.time import now_ts

logger = logging.getLogger(__name__)


def start_checkout(user_sub: str, now: Optional[int] = None) -> Dict[str, Any]:
    """Create or refresh the caller's pending checkout row."""
    ts = now_ts() if now is None else now
    item = with_ttl({"user_sub": user_sub, "created_at": ts}, ts + S.pending_checkout_ttl_seconds)
    with store_errors():
        T.pending_checkouts.put_item(Item=item)
    logger.info("pending checkout started user_sub=%s", user_sub)
    return item


def get_pending_checkout(user_sub: str, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
    ts = now_ts() if now is None else now
    item = get_item(T.pending_checkouts, {"user_sub": user_sub})
    if not item or as_int(item.get("created_at")) < ts - S.pending_checkout_ttl_seconds:
        return None
    return item


def find_recent_checkout(now: Optional[int] = None) -> Optional[Dict[str, Any]]:
    """Most recent pending checkout still inside the TTL window, across all users.

    DynamoDB expiry lags by hours, so the window is enforced here rather than
    trusted to the TTL attribute.
    """
    ts = now_ts() if now is None else now
    cutoff = ts - S.pending_checkout_ttl_seconds
    best: Optional[Dict[str, Any]] = None
    last_key = None
    while True:
        kwargs: Dict[str, Any] = {
            "FilterExpression": "created_at >= :cutoff",
            "ExpressionAttributeValues": {":cutoff": cutoff},
        }
        if last_key:
            kwargs["ExclusiveStartKey"] = last_key
        with store_errors():
            resp = T.pending_checkouts.scan(**kwargs)
        for item in resp.get("Items", []):
            if best is None or as_int(item.get("created_at")) > as_int(best.get("created_at")):
                best = item
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            break
    return best


def clear_checkout(user_sub: str, created_at: int) -> bool:
    """Remove the row that was consumed, leaving a newer one alone."""
    try:
        with store_errors():
            T.pending_checkouts.delete_item(
                Key={"user_sub": user_sub},
                ConditionExpression="created_at <= :c",
                ExpressionAttributeValues={":c": int(created_at)},
            )
        return True
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        return False
