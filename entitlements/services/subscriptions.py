from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from entitlements.core.errors import AlreadyLinked
from entitlements.core.settings import S
from entitlements.core.store import as_opt_int, get_item, is_conditional_failure, store_errors, with_ttl
from entitlements.core.tables import T
from entitlements.core.time import iso, now_ts
from entitlements.services import entitlements as resolver
from entitlements.services.audit import audit_event
from entitlements.services.characters import enforce_slot_limit

logger = logging.getLogger(__name__)

# Signals that may (re)bind a user to a new subscription id.
SIGNAL_CREATED = "created"
SIGNAL_ACTIVATED = "activated"
SIGNAL_UPDATED = "updated"
SIGNAL_CANCELED = "canceled"
SIGNAL_PAYMENT_FAILED = "payment_failed"
SIGNAL_SUSPENDED = "suspended"

ACTIVATING_SIGNALS = (SIGNAL_CREATED, SIGNAL_ACTIVATED, SIGNAL_UPDATED)
SIGNALS = ACTIVATING_SIGNALS + (SIGNAL_CANCELED, SIGNAL_PAYMENT_FAILED, SIGNAL_SUSPENDED)

_STATUS_BY_SIGNAL = {
    SIGNAL_CREATED: resolver.STATUS_ACTIVE,
    SIGNAL_ACTIVATED: resolver.STATUS_ACTIVE,
    SIGNAL_UPDATED: resolver.STATUS_ACTIVE,
    SIGNAL_CANCELED: resolver.STATUS_CANCELED,
    SIGNAL_PAYMENT_FAILED: resolver.STATUS_PAST_DUE,
    SIGNAL_SUSPENDED: resolver.STATUS_INACTIVE,
}


@dataclass(frozen=True)
class SubscriptionState:
    plan: str
    status: str
    ends_at: Optional[int]


def derive_state(plan: Optional[str], signal: str, ends_at: Optional[int], now: int) -> SubscriptionState:
    """Map a lifecycle signal to the absolute subscription fields to store.

    An end instant already in the past collapses to free/free whatever the
    signal says, so a late or replayed event cannot resurrect access.
    """
    if signal not in _STATUS_BY_SIGNAL:
        raise ValueError(f"unknown lifecycle signal {signal!r}")
    if ends_at is not None and int(ends_at) <= now:
        return SubscriptionState(resolver.PLAN_FREE, resolver.STATUS_FREE, int(ends_at))
    return SubscriptionState(plan or resolver.PLAN_MONTHLY, _STATUS_BY_SIGNAL[signal], ends_at)


# ---------------------------------------------------------------------------
# Lookups


def find_user_by_subscription_id(subscription_id: str) -> Optional[str]:
    if not subscription_id:
        return None
    with store_errors():
        resp = T.users.query(
            IndexName=S.users_subscription_index,
            KeyConditionExpression=Key("subscription_id").eq(subscription_id),
            Limit=1,
        )
    items = resp.get("Items", [])
    return items[0]["user_sub"] if items else None


def _link_key(provider: str, account_id: str) -> Dict[str, str]:
    return {"pk": f"LINK#{provider}#{account_id}", "sk": "ACCOUNT"}


def find_user_by_account(provider: str, account_id: Optional[str]) -> Optional[str]:
    if not account_id:
        return None
    item = get_item(T.billing, _link_key(provider, account_id))
    return item.get("user_sub") if item else None


def link_account(provider: str, account_id: Optional[str], user_sub: str) -> bool:
    """Remember which user a provider's customer/account id belongs to.

    The first mapping wins; a different user claiming the same account id is
    logged and ignored.
    """
    if not account_id:
        return False
    try:
        with store_errors():
            T.billing.put_item(
                Item={**_link_key(provider, account_id), "user_sub": user_sub, "created_at": now_ts()},
                ConditionExpression="attribute_not_exists(pk) OR user_sub = :u",
                ExpressionAttributeValues={":u": user_sub},
            )
        return True
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        logger.warning("account link conflict provider=%s account=%s user_sub=%s", provider, account_id, user_sub)
        return False


# ---------------------------------------------------------------------------
# Processed-event markers


def _event_key(provider: str, event_id: str) -> Dict[str, str]:
    return {"pk": f"EVENT#{provider}", "sk": event_id}


def is_event_processed(provider: str, event_id: Optional[str]) -> bool:
    if not event_id:
        return False
    return get_item(T.billing, _event_key(provider, event_id)) is not None


def mark_event_processed(provider: str, event_id: Optional[str]) -> None:
    if not event_id:
        return
    now = now_ts()
    item = with_ttl({**_event_key(provider, event_id), "processed_at": now}, now + S.processed_event_ttl_seconds)
    with store_errors():
        T.billing.put_item(Item=item)


def claim_order(provider: str, order_id: str, user_sub: str) -> bool:
    """Record an order id once; False if it was already claimed."""
    try:
        with store_errors():
            T.billing.put_item(
                Item={"pk": f"ORDER#{provider}", "sk": order_id, "user_sub": user_sub, "created_at": now_ts()},
                ConditionExpression="attribute_not_exists(pk)",
            )
        return True
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        return False


def release_order(provider: str, order_id: str) -> None:
    with store_errors():
        T.billing.delete_item(Key={"pk": f"ORDER#{provider}", "sk": order_id})


# ---------------------------------------------------------------------------
# Parked events: subscription signals that arrived before their user was known


def _parked_pk(provider: str, subscription_id: str) -> str:
    return f"PARKED#{provider}#{subscription_id}"


def park_event(
    provider: str,
    subscription_id: str,
    *,
    event_id: Optional[str],
    signal: str,
    plan: Optional[str],
    ends_at: Optional[int],
    event_at: Optional[int],
) -> None:
    now = now_ts()
    item = {
        "pk": _parked_pk(provider, subscription_id),
        "sk": event_id or f"{event_at or now}#{signal}",
        "signal": signal,
        "plan": plan,
        "ends_at": ends_at,
        "event_at": event_at,
        "parked_at": now,
    }
    with store_errors():
        T.billing.put_item(Item=with_ttl(item, now + S.processed_event_ttl_seconds))
    logger.info("parked %s event provider=%s subscription_id=%s", signal, provider, subscription_id)


def replay_parked(provider: str, subscription_id: str, user_sub: str) -> int:
    """Apply events parked for `subscription_id` now that it belongs to `user_sub`."""
    with store_errors():
        resp = T.billing.query(KeyConditionExpression=Key("pk").eq(_parked_pk(provider, subscription_id)))
    items = sorted(resp.get("Items", []), key=lambda i: as_opt_int(i.get("event_at")) or 0)
    applied = 0
    for item in items:
        if apply_subscription(
            user_sub,
            provider=provider,
            subscription_id=subscription_id,
            plan=item.get("plan"),
            signal=item["signal"],
            ends_at=as_opt_int(item.get("ends_at")),
            event_at=as_opt_int(item.get("event_at")),
        ):
            applied += 1
        with store_errors():
            T.billing.delete_item(Key={"pk": item["pk"], "sk": item["sk"]})
    if items:
        logger.info(
            "replayed %d/%d parked events provider=%s subscription_id=%s user_sub=%s",
            applied, len(items), provider, subscription_id, user_sub,
        )
    return applied


# ---------------------------------------------------------------------------
# Writes


def apply_subscription(
    user_sub: str,
    *,
    provider: str,
    subscription_id: Optional[str],
    plan: Optional[str],
    signal: str,
    ends_at: Optional[int],
    event_at: Optional[int] = None,
    now: Optional[int] = None,
) -> bool:
    """Absolute, conditional write of the subscription fields.

    Re-applying the same event writes the same values. Events older than the
    last applied one, and non-activating events for a subscription other than
    the stored one, fail the condition and are dropped. Returns whether the
    row changed.
    """
    ts = now_ts() if now is None else now
    state = derive_state(plan, signal, ends_at, ts)
    ent = resolver.resolve(state.plan, state.status, state.ends_at, now=ts)

    sets = [
        "subscription_plan = :p",
        "subscription_status = :s",
        "subscription_ends_at = :e",
        "subscription_provider = :prov",
        "character_slots = :slots",
        "updated_at = :now",
    ]
    values: Dict[str, Any] = {
        ":p": state.plan,
        ":s": state.status,
        ":e": state.ends_at,
        ":prov": provider,
        ":slots": ent.slots,
        ":now": ts,
    }
    conditions = ["attribute_exists(user_sub)"]

    if subscription_id:
        sets.append("subscription_id = :sid")
        values[":sid"] = subscription_id
        if signal not in ACTIVATING_SIGNALS:
            conditions.append("(attribute_not_exists(subscription_id) OR subscription_id = :sid)")
    if event_at is not None:
        sets.append("subscription_event_at = :ea")
        values[":ea"] = int(event_at)
        conditions.append("(attribute_not_exists(subscription_event_at) OR subscription_event_at <= :ea)")

    try:
        with store_errors():
            T.users.update_item(
                Key={"user_sub": user_sub},
                UpdateExpression="SET " + ", ".join(sets),
                ConditionExpression=" AND ".join(conditions),
                ExpressionAttributeValues=values,
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        logger.info(
            "skipped stale subscription event user_sub=%s provider=%s subscription_id=%s signal=%s event_at=%s",
            user_sub, provider, subscription_id, signal, event_at,
        )
        return False

    audit_event(
        "subscription_applied",
        user_sub,
        provider=provider,
        subscription_id=subscription_id,
        signal=signal,
        plan=state.plan,
        status=state.status,
        ends_at=state.ends_at,
        slots=ent.slots,
    )
    enforce_slot_limit(user_sub)
    return True


def link_subscription(
    user_sub: str,
    *,
    provider: str,
    subscription_id: str,
    plan: Optional[str],
    signal: str,
    ends_at: Optional[int],
    now: Optional[int] = None,
) -> bool:
    """User-initiated link; fills the subscription only if a webhook has not.

    Raises AlreadyLinked when the user row already carries this subscription
    id, which means the webhook path got there first and may have progressed
    the status further than the caller knows.
    """
    ts = now_ts() if now is None else now
    state = derive_state(plan, signal, ends_at, ts)
    ent = resolver.resolve(state.plan, state.status, state.ends_at, now=ts)
    try:
        with store_errors():
            T.users.update_item(
                Key={"user_sub": user_sub},
                UpdateExpression=(
                    "SET subscription_id = :sid, subscription_plan = :p, subscription_status = :s, "
                    "subscription_ends_at = :e, subscription_provider = :prov, character_slots = :slots, "
                    "updated_at = :now"
                ),
                ConditionExpression=(
                    "attribute_exists(user_sub) AND "
                    "(attribute_not_exists(subscription_id) OR subscription_id <> :sid)"
                ),
                ExpressionAttributeValues={
                    ":sid": subscription_id,
                    ":p": state.plan,
                    ":s": state.status,
                    ":e": state.ends_at,
                    ":prov": provider,
                    ":slots": ent.slots,
                    ":now": ts,
                },
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        raise AlreadyLinked("subscription already linked", subscription_id=subscription_id) from exc

    audit_event(
        "subscription_linked",
        user_sub,
        provider=provider,
        subscription_id=subscription_id,
        plan=state.plan,
        status=state.status,
        ends_at=state.ends_at,
    )
    enforce_slot_limit(user_sub)
    return True


def expire_subscription(user_sub: str, now: Optional[int] = None) -> bool:
    """Turn a canceled subscription whose paid period is over into free/free."""
    ts = now_ts() if now is None else now
    try:
        with store_errors():
            T.users.update_item(
                Key={"user_sub": user_sub},
                UpdateExpression=(
                    "SET subscription_plan = :free, subscription_status = :free, "
                    "character_slots = :slots, updated_at = :now"
                ),
                ConditionExpression="subscription_status = :canceled AND subscription_ends_at <= :now",
                ExpressionAttributeValues={
                    ":free": resolver.PLAN_FREE,
                    ":canceled": resolver.STATUS_CANCELED,
                    ":slots": S.free_character_slots,
                    ":now": ts,
                },
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        return False
    audit_event("subscription_expired", user_sub, slots=S.free_character_slots)
    enforce_slot_limit(user_sub)
    return True


def refresh_character_slots(user: Dict[str, Any], now: Optional[int] = None) -> bool:
    """Rewrite the cached slot count when it drifted from the resolver's answer."""
    ent = resolver.resolve_user(user, now=now)
    cached = as_opt_int(user.get("character_slots"))
    if cached == ent.slots:
        return False
    try:
        with store_errors():
            T.users.update_item(
                Key={"user_sub": user["user_sub"]},
                UpdateExpression="SET character_slots = :slots, updated_at = :now",
                ConditionExpression="attribute_exists(user_sub)",
                ExpressionAttributeValues={":slots": ent.slots, ":now": now_ts() if now is None else now},
            )
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        return False
    logger.info("repaired character_slots user_sub=%s cached=%s derived=%s", user["user_sub"], cached, ent.slots)
    enforce_slot_limit(user["user_sub"])
    return True


def subscription_view(user: Dict[str, Any], now: Optional[int] = None) -> Dict[str, Any]:
    ent = resolver.resolve_user(user, now=now)
    return {
        "plan": user.get("subscription_plan") or resolver.PLAN_FREE,
        "status": user.get("subscription_status") or resolver.STATUS_FREE,
        "ends_at": iso(as_opt_int(user.get("subscription_ends_at"))),
        "subscription_id": user.get("subscription_id"),
        "provider": user.get("subscription_provider"),
        "character_slots": ent.slots,
        "premium": ent.premium,
        "tier": ent.tier,
    }
