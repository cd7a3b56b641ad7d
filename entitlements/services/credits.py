from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from entitlements.core.errors import InsufficientCredits, StoreUnavailable
from entitlements.core.settings import S
from entitlements.core.store import as_int, is_conditional_failure, store_errors
from entitlements.core.tables import T
from entitlements.core.time import local_date_bucket, now_ts
from entitlements.services.audit import audit_event
from entitlements.services.daily_usage import USAGE_CHAPTERS, USAGE_SCENES
from entitlements.services.users import require_user, scan_users

logger = logging.getLogger(__name__)

_RECHARGE_ATTEMPTS = 3


@dataclass(frozen=True)
class CreditPackage:
    package_id: str
    name: str
    product_path: str
    credits: int
    starter: bool = False


CREDIT_PACKAGES: Dict[str, CreditPackage] = {
    "starter-kit": CreditPackage("starter-kit", "Starter Kit", "the-starter-kit", S.starter_kit_credits, starter=True),
    "novice-sack": CreditPackage("novice-sack", "Wordsmith's Sack", "the-novice-sack", 400),
    "chroniclers-kit": CreditPackage("chroniclers-kit", "Chronicler's Kit", "the-chronicler-s-kit", 1200),
    "worldbuilders-chest": CreditPackage("worldbuilders-chest", "Worldbuilder's Chest", "the-worldbuilder-s-chest", 3500),
}


def package_for_product(product: Optional[str]) -> Optional[CreditPackage]:
    p = (product or "").strip().lower()
    if not p:
        return None
    for pkg in CREDIT_PACKAGES.values():
        if p == pkg.product_path or p == pkg.package_id or p.endswith("/" + pkg.product_path):
            return pkg
    return None


def credit_cost(usage_type: str) -> int:
    if usage_type == USAGE_CHAPTERS:
        return S.chapter_credit_cost
    if usage_type == USAGE_SCENES:
        return S.scene_credit_cost
    raise ValueError(f"unknown usage type {usage_type!r}")


def is_low(balance: int) -> bool:
    return balance < S.low_credits_threshold


@dataclass(frozen=True)
class RechargeResult:
    recharged: bool
    added: int
    credits: int
    date: str


@dataclass(frozen=True)
class CreditDecision:
    allowed: bool
    balance: int
    required: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_error(self) -> InsufficientCredits:
        return InsufficientCredits(self.required, self.balance)


def process_daily_recharge(
    user_sub: str,
    user: Optional[Dict[str, Any]] = None,
    now: Optional[int] = None,
) -> RechargeResult:
    """Top the balance up once per local day, never past the cap.

    The write is conditional on both the day marker and the balance read, so
    the lazy path and the batch job can race freely; the loser re-reads and
    sees the day already marked.
    """
    ts = now_ts() if now is None else now
    user = user or require_user(user_sub)
    for _ in range(_RECHARGE_ATTEMPTS):
        today = local_date_bucket(ts, user.get("timezone"))
        credits = as_int(user.get("credits"))
        if user.get("last_recharge_date") == today:
            return RechargeResult(False, 0, credits, today)

        new_balance = credits if credits >= S.daily_recharge_cap else min(credits + S.daily_recharge_amount, S.daily_recharge_cap)
        try:
            with store_errors():
                T.users.update_item(
                    Key={"user_sub": user_sub},
                    UpdateExpression="SET credits = :new, last_recharge_date = :today, updated_at = :now",
                    ConditionExpression=(
                        "(attribute_not_exists(last_recharge_date) OR last_recharge_date <> :today) "
                        "AND credits = :seen"
                    ),
                    ExpressionAttributeValues={":new": new_balance, ":today": today, ":seen": credits, ":now": ts},
                )
        except ClientError as exc:
            if not is_conditional_failure(exc):
                raise
            user = require_user(user_sub)
            continue

        added = new_balance - credits
        if added:
            audit_event("credits_recharged", user_sub, added=added, balance=new_balance, date=today)
        return RechargeResult(True, added, new_balance, today)

    logger.warning("daily recharge gave up after contention user_sub=%s", user_sub)
    return RechargeResult(False, 0, as_int(user.get("credits")), local_date_bucket(ts, user.get("timezone")))


def get_balance(user_sub: str, now: Optional[int] = None) -> Dict[str, Any]:
    user = require_user(user_sub)
    result = process_daily_recharge(user_sub, user=user, now=now)
    return {
        "credits": result.credits,
        "low": is_low(result.credits),
        "recharged_today": result.added,
        "last_recharge_date": result.date,
    }


def process_daily_recharge_for_all_users(batch_size: Optional[int] = None, now: Optional[int] = None) -> Dict[str, int]:
    ts = now_ts() if now is None else now
    limit = batch_size or S.sweep_batch_size
    stats = {"scanned": 0, "recharged": 0, "skipped": 0, "errors": 0}
    start_key = None
    while True:
        users, start_key = scan_users(limit=limit, start_key=start_key)
        for user in users:
            stats["scanned"] += 1
            try:
                result = process_daily_recharge(user["user_sub"], user=user, now=ts)
            except StoreUnavailable:
                logger.exception("daily recharge failed user_sub=%s", user["user_sub"])
                stats["errors"] += 1
                continue
            except LookupError:
                logger.info("user vanished during daily recharge user_sub=%s", user["user_sub"])
                stats["skipped"] += 1
                continue
            stats["recharged" if result.recharged else "skipped"] += 1
        if not start_key:
            break
    logger.info("batch daily recharge done %s", stats)
    return stats


def can_purchase_starter_kit(user_sub: str) -> bool:
    return not bool(require_user(user_sub).get("has_purchased_starter_kit"))


def can_afford(user_sub: str, amount: int, now: Optional[int] = None) -> CreditDecision:
    balance = get_balance(user_sub, now=now)["credits"]
    return CreditDecision(allowed=balance >= amount, balance=balance, required=int(amount))


def debit(user_sub: str, amount: int, reason: str = "") -> int:
    """Atomically take `amount` credits; InsufficientCredits if the balance is short."""
    try:
        with store_errors():
            resp = T.users.update_item(
                Key={"user_sub": user_sub},
                UpdateExpression="SET credits = credits - :amt, updated_at = :now",
                ConditionExpression="attribute_exists(user_sub) AND credits >= :amt",
                ExpressionAttributeValues={":amt": int(amount), ":now": now_ts()},
                ReturnValues="UPDATED_NEW",
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        balance = as_int(require_user(user_sub).get("credits"))
        raise InsufficientCredits(int(amount), balance) from exc
    balance = as_int(resp.get("Attributes", {}).get("credits"))
    audit_event("credits_debited", user_sub, amount=int(amount), balance=balance, reason=reason)
    return balance


def add_credits(user_sub: str, amount: int, reason: str = "") -> int:
    with store_errors():
        resp = T.users.update_item(
            Key={"user_sub": user_sub},
            UpdateExpression="ADD credits :amt SET updated_at = :now",
            ConditionExpression="attribute_exists(user_sub)",
            ExpressionAttributeValues={":amt": int(amount), ":now": now_ts()},
            ReturnValues="UPDATED_NEW",
        )
    balance = as_int(resp.get("Attributes", {}).get("credits"))
    audit_event("credits_added", user_sub, amount=int(amount), balance=balance, reason=reason)
    return balance


def grant_starter_kit(user_sub: str) -> bool:
    """Set the one-time flag and add the kit's credits in one write."""
    try:
        with store_errors():
            T.users.update_item(
                Key={"user_sub": user_sub},
                UpdateExpression="SET has_purchased_starter_kit = :t, updated_at = :now ADD credits :amt",
                ConditionExpression=(
                    "attribute_exists(user_sub) AND "
                    "(attribute_not_exists(has_purchased_starter_kit) OR has_purchased_starter_kit = :f)"
                ),
                ExpressionAttributeValues={
                    ":t": True,
                    ":f": False,
                    ":amt": S.starter_kit_credits,
                    ":now": now_ts(),
                },
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        logger.info("starter kit already purchased user_sub=%s", user_sub)
        return False
    audit_event("starter_kit_granted", user_sub, amount=S.starter_kit_credits)
    return True


def grant_package(user_sub: str, package: CreditPackage, reason: str = "") -> bool:
    if package.starter:
        return grant_starter_kit(user_sub)
    add_credits(user_sub, package.credits, reason=reason or package.package_id)
    return True
