from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping

import requests

from entitlements.core.crypto import constant_time_equals, hmac_sha256_hex
from entitlements.core.errors import InvalidSignature, MalformedEvent, ProviderUnavailable
from entitlements.core.settings import S
from entitlements.services.subscriptions import (
    SIGNAL_ACTIVATED,
    SIGNAL_CANCELED,
    SIGNAL_CREATED,
    SIGNAL_PAYMENT_FAILED,
    SIGNAL_SUSPENDED,
    SIGNAL_UPDATED,
)
from entitlements.webhooks.base import WebhookAdapter, header, load_json, path

logger = logging.getLogger(__name__)


def _own_id_if_subscription(data: Mapping[str, Any]) -> Any:
    sid = str(data.get("id") or "")
    return sid if sid.startswith("sub_") else None


def parse_signature_header(value: str) -> Dict[str, List[str]]:
    """`ts=1671552777;h1=abc...` -> {"ts": [...], "h1": [...]}. Rotated secrets send several h1."""
    parts: Dict[str, List[str]] = {}
    for chunk in (value or "").split(";"):
        key, sep, val = chunk.strip().partition("=")
        if sep and val:
            parts.setdefault(key, []).append(val)
    return parts


class PaddleAdapter(WebhookAdapter):
    name = "paddle"
    signature_header = "paddle-signature"

    signals = {
        "subscription.created": SIGNAL_CREATED,
        "subscription.activated": SIGNAL_ACTIVATED,
        "subscription.resumed": SIGNAL_ACTIVATED,
        "subscription.updated": SIGNAL_UPDATED,
        "subscription.canceled": SIGNAL_CANCELED,
        "subscription.past_due": SIGNAL_PAYMENT_FAILED,
        "subscription.paused": SIGNAL_SUSPENDED,
        "transaction.completed": SIGNAL_ACTIVATED,
        "transaction.paid": SIGNAL_ACTIVATED,
        "transaction.payment_failed": SIGNAL_PAYMENT_FAILED,
    }
    status_signals = {
        "active": SIGNAL_UPDATED,
        "trialing": SIGNAL_UPDATED,
        "canceled": SIGNAL_CANCELED,
        "past_due": SIGNAL_PAYMENT_FAILED,
        "paused": SIGNAL_SUSPENDED,
    }
    status_refined_types = ("subscription.updated",)

    event_id_paths = (path("event_id"), path("notification_id"))
    event_type_paths = (path("event_type"),)
    occurred_at_paths = (path("occurred_at"),)
    data_paths = (path("data"),)

    user_ref_paths = (path("custom_data.userId"), path("custom_data.user_sub"))
    subscription_id_paths = (path("subscription_id"), _own_id_if_subscription)
    account_id_paths = (path("customer_id"),)
    status_paths = (path("status"),)
    plan_paths = (
        path("custom_data.billingCycle"),
        path("items.0.price.billing_cycle.interval"),
        path("billing_cycle.interval"),
    )
    ends_at_paths = (
        path("scheduled_change.effective_at"),
        path("current_billing_period.ends_at"),
        path("billing_period.ends_at"),
        path("next_billed_at"),
        path("canceled_at"),
    )

    def parse(self, body: bytes, headers: Mapping[str, str]) -> List[Mapping[str, Any]]:
        secret = S.paddle_webhook_secret
        if not secret:
            raise InvalidSignature("paddle webhook secret not configured")
        parts = parse_signature_header(header(headers, self.signature_header))
        ts = (parts.get("ts") or [""])[0]
        received = parts.get("h1") or []
        if not ts or not received:
            raise InvalidSignature("malformed Paddle-Signature header")

        expected = hmac_sha256_hex(secret, ts.encode("utf-8") + b":" + body)
        if not any(constant_time_equals(expected, h) for h in received):
            raise InvalidSignature("paddle signature mismatch")

        event = load_json(body)
        if not isinstance(event, Mapping):
            raise MalformedEvent("paddle payload is not an object")
        return [event]

    def fetch_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        if not S.paddle_api_key:
            raise ProviderUnavailable("paddle is not configured")
        try:
            resp = requests.get(
                f"{S.paddle_base_url}/subscriptions/{subscription_id}",
                headers={"Authorization": f"Bearer {S.paddle_api_key}"},
                timeout=S.provider_http_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"paddle request failed: {exc}") from exc
        if resp.status_code == 404:
            raise MalformedEvent(f"unknown paddle subscription {subscription_id}")
        if resp.status_code >= 400:
            logger.warning("paddle subscription fetch failed id=%s status=%s", subscription_id, resp.status_code)
            raise ProviderUnavailable(f"paddle returned {resp.status_code}")
        data = (resp.json() or {}).get("data")
        if not isinstance(data, Mapping):
            raise MalformedEvent("paddle subscription response has no data")
        return data
