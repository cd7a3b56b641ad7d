from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from entitlements.core.errors import QuotaExceeded
from entitlements.core.settings import S
from entitlements.core.store import as_int, get_item, is_conditional_failure, store_errors
from entitlements.core.tables import T
from entitlements.core.time import DAY_SECONDS, iso, local_date_bucket, next_local_midnight, now_ts
from entitlements.services.entitlements import TIER_FREE, TIER_PAID

logger = logging.getLogger(__name__)

USAGE_CHAPTERS = "chapters"
USAGE_SCENES = "scenes"
USAGE_TYPES = (USAGE_CHAPTERS, USAGE_SCENES)

MODE_SHARED = "shared"
MODE_PER_CHARACTER = "per_character"


def quota_mode(tier: str) -> str:
    if tier != TIER_PAID:
        return MODE_SHARED
    return MODE_PER_CHARACTER if S.quota_mode == MODE_PER_CHARACTER else MODE_SHARED


def daily_limit(tier: str, usage_type: str) -> int:
    if usage_type not in USAGE_TYPES:
        raise ValueError(f"unknown usage type {usage_type!r}")
    chapters = usage_type == USAGE_CHAPTERS
    if tier != TIER_PAID:
        return S.free_daily_chapters if chapters else S.free_daily_scenes
    if quota_mode(tier) == MODE_PER_CHARACTER:
        return S.paid_per_character_daily_chapters if chapters else S.paid_per_character_daily_scenes
    return S.paid_daily_chapters if chapters else S.paid_daily_scenes


def usage_key(bucket: str, usage_type: str, character_id: Optional[str] = None) -> str:
    return f"{bucket}#{usage_type}#{character_id}" if character_id else f"{bucket}#{usage_type}"


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    usage_type: str
    used: int
    limit: int
    remaining: int
    bucket: str
    resets_at: str
    character_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_error(self) -> QuotaExceeded:
        return QuotaExceeded(self.usage_type, self.limit, remaining=self.remaining, resets_at=self.resets_at)


def _scope(tier: str, character_id: Optional[str]) -> Optional[str]:
    if quota_mode(tier) == MODE_SHARED:
        return None
    if not character_id:
        raise ValueError("character_id is required for per-character quotas")
    return character_id


def can_create(
    user_sub: str,
    usage_type: str,
    timezone_name: Optional[str],
    tier: str = TIER_FREE,
    character_id: Optional[str] = None,
    now: Optional[int] = None,
) -> UsageDecision:
    ts = now_ts() if now is None else now
    scope = _scope(tier, character_id)
    limit = daily_limit(tier, usage_type)
    bucket = local_date_bucket(ts, timezone_name)
    item = get_item(T.daily_usage, {"user_sub": user_sub, "usage_key": usage_key(bucket, usage_type, scope)})
    used = as_int((item or {}).get("count"))
    remaining = max(0, limit - used)
    return UsageDecision(
        allowed=remaining > 0,
        usage_type=usage_type,
        used=used,
        limit=limit,
        remaining=remaining,
        bucket=bucket,
        resets_at=iso(next_local_midnight(ts, timezone_name)),
        character_id=scope,
    )


def increment(
    user_sub: str,
    usage_type: str,
    timezone_name: Optional[str],
    tier: str = TIER_FREE,
    character_id: Optional[str] = None,
    now: Optional[int] = None,
) -> int:
    """Count one successful creation against today's bucket.

    Single conditional ADD; concurrent callers can never push the counter
    past the limit. Raises QuotaExceeded when the bucket is already full.
    """
    ts = now_ts() if now is None else now
    scope = _scope(tier, character_id)
    limit = daily_limit(tier, usage_type)
    bucket = local_date_bucket(ts, timezone_name)
    resets_at = next_local_midnight(ts, timezone_name)
    if limit <= 0:
        # A fresh bucket has no counter for the condition to compare against.
        raise QuotaExceeded(usage_type, limit, remaining=0, resets_at=iso(resets_at))
    try:
        with store_errors():
            resp = T.daily_usage.update_item(
                Key={"user_sub": user_sub, "usage_key": usage_key(bucket, usage_type, scope)},
                UpdateExpression="ADD #c :one SET updated_at = :now, #ttl = :ttl",
                ConditionExpression="attribute_not_exists(#c) OR #c < :limit",
                ExpressionAttributeNames={"#c": "count", "#ttl": S.ddb_ttl_attr},
                ExpressionAttributeValues={
                    ":one": 1,
                    ":limit": limit,
                    ":now": ts,
                    ":ttl": resets_at + S.daily_usage_retention_days * DAY_SECONDS,
                },
                ReturnValues="UPDATED_NEW",
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        logger.info("daily quota exhausted user_sub=%s type=%s bucket=%s limit=%s", user_sub, usage_type, bucket, limit)
        raise QuotaExceeded(usage_type, limit, remaining=0, resets_at=iso(resets_at)) from exc
    return as_int(resp.get("Attributes", {}).get("count"))


def get_daily_usage(
    user_sub: str,
    timezone_name: Optional[str],
    tier: str = TIER_FREE,
    character_id: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    ts = now_ts() if now is None else now
    usage = {
        t: can_create(user_sub, t, timezone_name, tier, character_id=character_id, now=ts).to_dict()
        for t in USAGE_TYPES
    }
    return {
        "tier": tier,
        "mode": quota_mode(tier),
        "date": local_date_bucket(ts, timezone_name),
        "resets_at": iso(next_local_midnight(ts, timezone_name)),
        "usage": usage,
    }
