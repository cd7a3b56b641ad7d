from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from entitlements.core.settings import S
from entitlements.core.store import as_opt_int
from entitlements.core.time import now_ts

PLAN_FREE = "free"
PLAN_WEEKLY = "weekly"
PLAN_MONTHLY = "monthly"
PLAN_YEARLY = "yearly"
PAID_PLANS = (PLAN_WEEKLY, PLAN_MONTHLY, PLAN_YEARLY)
PLANS = (PLAN_FREE,) + PAID_PLANS

STATUS_FREE = "free"
STATUS_ACTIVE = "active"
STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"
STATUS_INACTIVE = "inactive"
STATUSES = (STATUS_FREE, STATUS_ACTIVE, STATUS_CANCELED, STATUS_PAST_DUE, STATUS_INACTIVE)

CYCLE_DAYS = {PLAN_WEEKLY: 7, PLAN_MONTHLY: 30, PLAN_YEARLY: 365}

TIER_FREE = "free"
TIER_PAID = "paid"


@dataclass(frozen=True)
class Entitlement:
    slots: int
    premium: bool

    @property
    def tier(self) -> str:
        return TIER_PAID if self.premium else TIER_FREE

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "tier": self.tier}


def is_paid_plan(plan: Optional[str]) -> bool:
    return plan in PAID_PLANS


def normalize_plan(value: Any) -> Optional[str]:
    """Map loose billing-cycle strings ("Weekly", "week", "quillia-yearly-tribute") to a plan."""
    s = str(value or "").strip().lower()
    if not s:
        return None
    if s in PLANS:
        return s
    if "week" in s:
        return PLAN_WEEKLY
    if "year" in s or "annual" in s:
        return PLAN_YEARLY
    if "month" in s:
        return PLAN_MONTHLY
    return None


def cycle_end(plan: Optional[str], start_ts: int) -> int:
    return int(start_ts) + CYCLE_DAYS.get(plan or "", CYCLE_DAYS[PLAN_MONTHLY]) * 24 * 3600


def resolve(plan: Optional[str], status: Optional[str], ends_at: Optional[int], now: Optional[int] = None) -> Entitlement:
    ts = now_ts() if now is None else now
    premium = is_paid_plan(plan) and (
        status == STATUS_ACTIVE
        or (status == STATUS_CANCELED and ends_at is not None and int(ends_at) > ts)
    )
    return Entitlement(
        slots=S.premium_character_slots if premium else S.free_character_slots,
        premium=premium,
    )


def resolve_user(user: Mapping[str, Any], now: Optional[int] = None) -> Entitlement:
    return resolve(
        user.get("subscription_plan"),
        user.get("subscription_status"),
        as_opt_int(user.get("subscription_ends_at")),
        now=now,
    )
