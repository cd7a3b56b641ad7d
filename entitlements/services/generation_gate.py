from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from entitlements.services import characters, credits, daily_usage
from entitlements.services.entitlements import resolve_user
from entitlements.services.users import require_user

logger = logging.getLogger(__name__)

REASON_OK = "ok"
REASON_LOCKED = "character_locked"
REASON_QUOTA = "quota_exceeded"
REASON_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class GenerationDecision:
    allowed: bool
    reason: str
    tier: str
    character_id: Optional[str]
    usage: Optional[daily_usage.UsageDecision] = None
    credits: Optional[credits.CreditDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "tier": self.tier,
            "character_id": self.character_id,
            "usage": self.usage.to_dict() if self.usage else None,
            "credits": self.credits.to_dict() if self.credits else None,
        }


def _target_character(user_sub: str, character_id: Optional[str]) -> Optional[str]:
    if character_id:
        return character_id
    active = characters.get_active_character(user_sub)
    return active["character_id"] if active else None


def authorize(
    user_sub: str,
    usage_type: str,
    character_id: Optional[str] = None,
    now: Optional[int] = None,
) -> GenerationDecision:
    """Decide whether a generation may start. Nothing is consumed here."""
    user = require_user(user_sub)
    tier = resolve_user(user, now=now).tier
    target = _target_character(user_sub, character_id)

    if target and not characters.get_access(user_sub, user=user).is_accessible(target):
        return GenerationDecision(False, REASON_LOCKED, tier, target)

    usage = daily_usage.can_create(user_sub, usage_type, user.get("timezone"), tier, character_id=target, now=now)
    if not usage.allowed:
        return GenerationDecision(False, REASON_QUOTA, tier, target, usage=usage)

    wallet = credits.can_afford(user_sub, credits.credit_cost(usage_type), now=now)
    if not wallet.allowed:
        return GenerationDecision(False, REASON_CREDITS, tier, target, usage=usage, credits=wallet)

    return GenerationDecision(True, REASON_OK, tier, target, usage=usage, credits=wallet)


def complete(
    user_sub: str,
    usage_type: str,
    character_id: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Record a generation that has already been produced and persisted.

    Credits are debited first; if the quota increment then fails for any
    reason (refusal, store outage) the debit is refunded before the error
    propagates.
    """
    user = require_user(user_sub)
    tier = resolve_user(user, now=now).tier
    target = _target_character(user_sub, character_id)
    cost = credits.credit_cost(usage_type)

    balance = credits.debit(user_sub, cost, reason=usage_type)
    try:
        count = daily_usage.increment(user_sub, usage_type, user.get("timezone"), tier, character_id=target, now=now)
    except Exception as exc:
        credits.add_credits(user_sub, cost, reason=f"refund:{usage_type}")
        logger.info("refunded %s credits after %s user_sub=%s", cost, type(exc).__name__, user_sub)
        raise
    return {
        "usage_type": usage_type,
        "character_id": target,
        "used": count,
        "credits": balance,
        "low_credits": credits.is_low(balance),
    }
