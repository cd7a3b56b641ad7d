from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, List, Mapping, Optional

import stripe

from entitlements.core.errors import InvalidSignature, MalformedEvent, ProviderUnavailable
from entitlements.core.settings import S
from entitlements.core.time import now_ts
from entitlements.services.subscriptions import (
    SIGNAL_ACTIVATED,
    SIGNAL_CANCELED,
    SIGNAL_CREATED,
    SIGNAL_PAYMENT_FAILED,
    SIGNAL_SUSPENDED,
    SIGNAL_UPDATED,
)
from entitlements.webhooks.base import ProviderEvent, WebhookAdapter, first_instant, header, load_json, path, ref

logger = logging.getLogger(__name__)


def as_plain_dict(obj: Any) -> Any:
    """Nested plain dicts and lists from a StripeObject."""
    if isinstance(obj, stripe.StripeObject):
        obj = obj.to_dict()
    if isinstance(obj, Mapping):
        return {k: as_plain_dict(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [as_plain_dict(v) for v in obj]
    return obj


def _own_id_if_subscription(data: Mapping[str, Any]) -> Any:
    return data.get("id") if data.get("object") == "subscription" else None


class StripeAdapter(WebhookAdapter):
    name = "stripe"
    signature_header = "stripe-signature"

    signals = {
        "checkout.session.completed": SIGNAL_CREATED,
        "customer.subscription.created": SIGNAL_CREATED,
        "customer.subscription.updated": SIGNAL_UPDATED,
        "customer.subscription.resumed": SIGNAL_ACTIVATED,
        "customer.subscription.paused": SIGNAL_SUSPENDED,
        "customer.subscription.deleted": SIGNAL_CANCELED,
        "invoice.payment_succeeded": SIGNAL_ACTIVATED,
        "invoice.paid": SIGNAL_ACTIVATED,
        "invoice.payment_failed": SIGNAL_PAYMENT_FAILED,
    }
    status_signals = {
        "active": SIGNAL_UPDATED,
        "trialing": SIGNAL_UPDATED,
        "canceled": SIGNAL_CANCELED,
        "past_due": SIGNAL_PAYMENT_FAILED,
        "incomplete": SIGNAL_PAYMENT_FAILED,
        "unpaid": SIGNAL_SUSPENDED,
        "paused": SIGNAL_SUSPENDED,
        "incomplete_expired": SIGNAL_SUSPENDED,
    }
    status_refined_types = ("customer.subscription.created", "customer.subscription.updated")

    event_id_paths = (path("id"),)
    event_type_paths = (path("type"),)
    occurred_at_paths = (path("created"),)
    data_paths = (path("data.object"),)

    user_ref_paths = (
        path("metadata.userId"),
        path("metadata.user_sub"),
        path("client_reference_id"),
        path("subscription_details.metadata.userId"),
        path("parent.subscription_details.metadata.userId"),
    )
    subscription_id_paths = (
        ref("subscription"),
        path("parent.subscription_details.subscription"),
        _own_id_if_subscription,
    )
    account_id_paths = (ref("customer"),)
    status_paths = (path("status"),)
    plan_paths = (
        path("metadata.billingCycle"),
        path("metadata.plan"),
        path("items.data.0.price.recurring.interval"),
        path("items.data.0.plan.interval"),
        path("lines.data.0.price.recurring.interval"),
        path("lines.data.0.plan.interval"),
    )
    ends_at_paths = (
        path("ended_at"),
        path("cancel_at"),
        path("current_period_end"),
        path("items.data.0.current_period_end"),
        path("lines.data.0.period.end"),
    )

    def parse(self, body: bytes, headers: Mapping[str, str]) -> List[Mapping[str, Any]]:
        if not S.stripe_webhook_secret:
            raise InvalidSignature("stripe webhook secret not configured")
        sig = header(headers, self.signature_header)
        if not sig:
            raise InvalidSignature("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=S.stripe_webhook_secret,
                tolerance=S.stripe_webhook_tolerance_seconds,
            )
        except stripe.error.SignatureVerificationError as exc:
            raise InvalidSignature(f"stripe signature mismatch: {exc}") from exc
        except ValueError as exc:
            raise MalformedEvent(f"stripe payload is not JSON: {exc}") from exc
        # Map the verified body itself; a StripeObject is not a Mapping.
        return [load_json(body)]

    def status_signal(self, data: Mapping[str, Any]) -> Optional[str]:
        signal = super().status_signal(data)
        # Scheduled cancellation keeps status "active" until the period ends.
        if signal == SIGNAL_UPDATED and data.get("cancel_at_period_end"):
            return SIGNAL_CANCELED
        return signal

    def normalize(self, event: Mapping[str, Any]) -> ProviderEvent:
        pe = super().normalize(event)
        if pe.event_type == "customer.subscription.deleted":
            # The subscription is over; its end is when it ended, not the paid-through date.
            ended = first_instant(self.data(event), (path("ended_at"), path("canceled_at")))
            pe = replace(pe, ends_at=ended or pe.occurred_at or now_ts())
        return pe

    def fetch_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        if not S.stripe_secret_key:
            raise ProviderUnavailable("stripe is not configured")
        stripe.api_key = S.stripe_secret_key
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.error.InvalidRequestError as exc:
            raise MalformedEvent(f"unknown stripe subscription {subscription_id}") from exc
        except stripe.error.StripeError as exc:
            logger.warning("stripe subscription fetch failed id=%s: %s", subscription_id, exc)
            raise ProviderUnavailable(str(exc)) from exc
        return as_plain_dict(subscription)
