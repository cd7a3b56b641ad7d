from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from entitlements.core.settings import S
from entitlements.core.store import get_item, is_conditional_failure, store_errors
from entitlements.core.tables import T
from entitlements.core.time import now_ts, parse_timezone
from entitlements.services.entitlements import PLAN_FREE, STATUS_FREE

logger = logging.getLogger(__name__)


def _key(user_sub: str) -> Dict[str, str]:
    return {"user_sub": user_sub}


def get_user(user_sub: str) -> Optional[Dict[str, Any]]:
    return get_item(T.users, _key(user_sub))


def require_user(user_sub: str) -> Dict[str, Any]:
    user = get_user(user_sub)
    if not user:
        raise LookupError(f"user {user_sub} not found")
    return user


def new_user_item(user_sub: str, timezone_name: Optional[str], ts: int) -> Dict[str, Any]:
    return {
        "user_sub": user_sub,
        "subscription_plan": PLAN_FREE,
        "subscription_status": STATUS_FREE,
        "subscription_ends_at": None,
        "character_slots": S.free_character_slots,
        "credits": S.initial_credits,
        "has_purchased_starter_kit": False,
        "timezone": timezone_name or "UTC",
        "created_at": ts,
        "updated_at": ts,
    }


def ensure_user(user_sub: str, timezone_name: Optional[str] = None) -> Dict[str, Any]:
    """Create the user row on first sight; the timezone is fixed at that moment."""
    if timezone_name:
        parse_timezone(timezone_name)
    existing = get_user(user_sub)
    if existing:
        return existing

    item = new_user_item(user_sub, timezone_name, now_ts())
    try:
        with store_errors():
            T.users.put_item(Item=item, ConditionExpression="attribute_not_exists(user_sub)")
        logger.info("created user row user_sub=%s timezone=%s", user_sub, item["timezone"])
        return item
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
    # Lost the race to a concurrent signup; the winner's row is authoritative.
    return get_user(user_sub) or item


def scan_users(
    *,
    limit: int,
    start_key: Optional[Dict[str, Any]] = None,
    filter_expression: Optional[str] = None,
    values: Optional[Dict[str, Any]] = None,
) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    kwargs: Dict[str, Any] = {"Limit": int(limit)}
    if start_key:
        kwargs["ExclusiveStartKey"] = start_key
    if filter_expression:
        kwargs["FilterExpression"] = filter_expression
        kwargs["ExpressionAttributeValues"] = values or {}
    with store_errors():
        resp = T.users.scan(**kwargs)
    return resp.get("Items", []), resp.get("LastEvaluatedKey")
