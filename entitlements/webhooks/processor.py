from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from entitlements.core.errors import MalformedEvent, StoreUnavailable, UnresolvableUser
from entitlements.core.time import now_ts
from entitlements.metrics import record_webhook_event
from entitlements.services import checkout_bridge, credits, subscriptions
from entitlements.services.entitlements import cycle_end
from entitlements.services.users import get_user
from entitlements.webhooks.base import ProviderEvent, WebhookAdapter
from entitlements.webhooks.fastspring import FastSpringAdapter
from entitlements.webhooks.paddle import PaddleAdapter
from entitlements.webhooks.stripe_adapter import StripeAdapter

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, WebhookAdapter] = {
    a.name: a for a in (StripeAdapter(), PaddleAdapter(), FastSpringAdapter())
}

OUTCOME_APPLIED = "applied"
OUTCOME_STALE = "stale"
OUTCOME_CREDITED = "credited"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_PARKED = "parked"
OUTCOME_UNRESOLVED = "unresolved"
OUTCOME_MALFORMED = "malformed"

VIA_USER_REF = "user_ref"
VIA_SUBSCRIPTION = "subscription_id"
VIA_ACCOUNT = "account"
VIA_CHECKOUT = "pending_checkout"


def get_adapter(provider: str) -> WebhookAdapter:
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise ValueError(f"unknown provider {provider!r}") from None


@dataclass
class EventOutcome:
    outcome: str
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    user_sub: Optional[str] = None
    via: Optional[str] = None


@dataclass
class WebhookResult:
    provider: str
    events: List[EventOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"received": True, "provider": self.provider, "events": [asdict(e) for e in self.events]}


def resolve_user(event: ProviderEvent, now: Optional[int] = None) -> Tuple[str, str]:
    """Find the user an event belongs to; first match wins.

    Explicit reference, then the user already holding the subscription id,
    then the provider account link, then (only for events that can start a
    subscription or carry a purchase) the freshest pending checkout.
    """
    if event.user_ref and get_user(event.user_ref):
        return event.user_ref, VIA_USER_REF
    if event.user_ref:
        logger.warning("event names unknown user provider=%s user_ref=%s", event.provider, event.user_ref)

    user_sub = subscriptions.find_user_by_subscription_id(event.subscription_id or "")
    if user_sub:
        return user_sub, VIA_SUBSCRIPTION
    user_sub = subscriptions.find_user_by_account(event.provider, event.account_id)
    if user_sub:
        return user_sub, VIA_ACCOUNT

    if event.signal in subscriptions.ACTIVATING_SIGNALS or event.products:
        pending = checkout_bridge.find_recent_checkout(now=now)
        if pending:
            return pending["user_sub"], VIA_CHECKOUT

    raise UnresolvableUser(
        "no user for event",
        provider=event.provider,
        event_type=event.event_type,
        subscription_id=event.subscription_id,
    )


def effective_ends_at(event: ProviderEvent, now: int) -> int:
    """Provider end instant, else one billing cycle from the event (or now)."""
    if event.ends_at is not None:
        return event.ends_at
    return cycle_end(event.plan, event.occurred_at or now)


def apply_event(user_sub: str, event: ProviderEvent, now: Optional[int] = None) -> bool:
    ts = now_ts() if now is None else now
    return subscriptions.apply_subscription(
        user_sub,
        provider=event.provider,
        subscription_id=event.subscription_id,
        plan=event.plan,
        signal=event.signal,
        ends_at=effective_ends_at(event, ts),
        event_at=event.occurred_at,
        now=ts,
    )


def grant_order(user_sub: str, event: ProviderEvent) -> int:
    """Credit each recognised package on an order exactly once."""
    order_id = event.order_id or event.event_id
    if not order_id:
        raise MalformedEvent("order has no id", provider=event.provider, event_type=event.event_type)
    granted = 0
    for product in event.products:
        package = credits.package_for_product(product)
        if package is None:
            continue
        claim = f"{order_id}#{package.package_id}"
        if not subscriptions.claim_order(event.provider, claim, user_sub):
            logger.info("order already credited provider=%s order=%s", event.provider, claim)
            continue
        try:
            if credits.grant_package(user_sub, package, reason=f"{event.provider}:{order_id}"):
                granted += 1
        except StoreUnavailable:
            subscriptions.release_order(event.provider, claim)
            raise
    return granted


def handle_event(adapter: WebhookAdapter, raw: Mapping[str, Any], now: Optional[int] = None) -> EventOutcome:
    event = adapter.normalize(raw)
    out = EventOutcome(OUTCOME_IGNORED, event_type=event.event_type, event_id=event.event_id)

    if subscriptions.is_event_processed(adapter.name, event.event_id):
        out.outcome = OUTCOME_DUPLICATE
        return out
    if event.signal is None and not event.products:
        logger.debug("ignoring %s event %s", adapter.name, event.event_type)
        return out

    try:
        user_sub, via = resolve_user(event, now=now)
    except UnresolvableUser:
        if event.signal and event.subscription_id:
            subscriptions.park_event(
                adapter.name,
                event.subscription_id,
                event_id=event.event_id,
                signal=event.signal,
                plan=event.plan,
                ends_at=effective_ends_at(event, now_ts() if now is None else now),
                event_at=event.occurred_at,
            )
            out.outcome = OUTCOME_PARKED
            return out
        raise
    out.user_sub, out.via = user_sub, via
    subscriptions.link_account(adapter.name, event.account_id, user_sub)

    if event.products and grant_order(user_sub, event):
        out.outcome = OUTCOME_CREDITED
    if event.signal:
        if apply_event(user_sub, event, now=now):
            out.outcome = OUTCOME_APPLIED
            if event.subscription_id:
                subscriptions.replay_parked(adapter.name, event.subscription_id, user_sub)
        elif out.outcome == OUTCOME_IGNORED:
            out.outcome = OUTCOME_STALE

    if via == VIA_CHECKOUT:
        pending = checkout_bridge.get_pending_checkout(user_sub, now=now)
        if pending:
            checkout_bridge.clear_checkout(user_sub, int(pending["created_at"]))
    subscriptions.mark_event_processed(adapter.name, event.event_id)
    return out


def process_webhook(
    provider: str,
    body: bytes,
    headers: Mapping[str, str],
    now: Optional[int] = None,
) -> WebhookResult:
    """Verify a delivery and apply each event in it.

    InvalidSignature and a payload that is not JSON at all propagate before
    any state is touched. Per-event MalformedEvent and UnresolvableUser are
    logged and skipped so the rest of a batch still applies. StoreUnavailable
    propagates so the provider retries the delivery.
    """
    adapter = get_adapter(provider)
    raws = adapter.parse(body, headers)
    result = WebhookResult(provider=provider)
    for raw in raws:
        try:
            outcome = handle_event(adapter, raw, now=now)
        except MalformedEvent as exc:
            logger.warning("malformed %s event: %s", provider, exc.message)
            outcome = EventOutcome(OUTCOME_MALFORMED)
        except UnresolvableUser as exc:
            logger.info("dropping unresolvable %s event: %s", provider, exc.detail)
            outcome = EventOutcome(
                OUTCOME_UNRESOLVED,
                event_type=exc.detail.get("event_type"),
            )
        record_webhook_event(provider, outcome.outcome)
        result.events.append(outcome)
    return result
