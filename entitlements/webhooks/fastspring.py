from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, List, Mapping, Optional

import requests

from entitlements.core.crypto import constant_time_equals, hmac_sha256_b64, hmac_sha256_hex
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
from entitlements.webhooks.base import (
    ProviderEvent,
    WebhookAdapter,
    first_instant,
    first_plan,
    first_str,
    header,
    json_field,
    load_json,
    path,
    ref,
)

logger = logging.getLogger(__name__)

ORDER_TYPES = ("order.completed", "order.fulfilled")


def _item_products(data: Mapping[str, Any]) -> List[str]:
    items = data.get("items") or []
    return [str(i.get("product")) for i in items if isinstance(i, Mapping) and i.get("product")]


def order_subscription(order: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """The subscription an order created, as an object, if there is one."""
    sub = order.get("subscription")
    if sub is None:
        subs = order.get("subscriptions") or []
        sub = subs[0] if subs else None
    if sub is None:
        for item in order.get("items") or []:
            if isinstance(item, Mapping) and item.get("subscription"):
                sub = item["subscription"]
                break
    if isinstance(sub, Mapping):
        return sub
    if isinstance(sub, str) and sub:
        return {"id": sub}
    return None


def signature_matches(secret: str, body: bytes, received: str) -> bool:
    """FastSpring sends base64; some proxies re-encode it as hex."""
    received = received.strip()
    if constant_time_equals(hmac_sha256_b64(secret, body), received):
        return True
    return constant_time_equals(hmac_sha256_hex(secret, body), received.lower())


class FastSpringAdapter(WebhookAdapter):
    name = "fastspring"
    signature_header = "x-fs-signature"

    signals = {
        "order.completed": SIGNAL_CREATED,
        "order.fulfilled": SIGNAL_CREATED,
        "subscription.activated": SIGNAL_ACTIVATED,
        "subscription.updated": SIGNAL_UPDATED,
        "subscription.charge.completed": SIGNAL_ACTIVATED,
        "subscription.canceled": SIGNAL_CANCELED,
        "subscription.deactivated": SIGNAL_CANCELED,
        "subscription.charge.failed": SIGNAL_PAYMENT_FAILED,
        "subscription.payment.overdue": SIGNAL_PAYMENT_FAILED,
        "subscription.paused": SIGNAL_SUSPENDED,
    }
    status_signals = {
        "active": SIGNAL_UPDATED,
        "trial": SIGNAL_UPDATED,
        "active_trial": SIGNAL_UPDATED,
        "canceled": SIGNAL_CANCELED,
        "deactivated": SIGNAL_CANCELED,
        "overdue": SIGNAL_PAYMENT_FAILED,
        "paused": SIGNAL_SUSPENDED,
    }
    status_refined_types = ("subscription.updated",)
    order_types = ORDER_TYPES

    event_id_paths = (path("id"),)
    event_type_paths = (path("type"), path("event"), path("@type"))
    occurred_at_paths = (path("created"),)
    data_paths = (path("data"),)

    user_ref_paths = (
        json_field(path("tags"), "userId"),
        json_field(path("tags"), "user_sub"),
        path("buyerReference"),
        path("customer.buyerReference"),
    )
    subscription_id_paths = (ref("subscription"), path("id"))
    account_id_paths = (path("account.id"), path("account"))
    status_paths = (path("state"), path("status"))
    plan_paths = (
        json_field(path("tags"), "billingCycle"),
        path("product.product"),
        path("product"),
        path("items.0.product"),
        path("intervalUnit"),
    )
    ends_at_paths = (
        path("endDate"),
        path("endValue"),
        path("end"),
        path("nextChargeDate"),
        path("nextValue"),
        path("next"),
    )
    order_id_paths = (path("id"), path("order"))
    product_paths = (_item_products,)

    def parse(self, body: bytes, headers: Mapping[str, str]) -> List[Mapping[str, Any]]:
        secret = S.fastspring_webhook_secret
        if not secret:
            raise InvalidSignature("fastspring webhook secret not configured")
        received = header(headers, self.signature_header) or header(headers, "fastspring-signature")
        if not received:
            raise InvalidSignature("missing X-FS-Signature header")
        if not signature_matches(secret, body, received):
            raise InvalidSignature("fastspring signature mismatch")

        payload = load_json(body)
        if isinstance(payload, Mapping) and isinstance(payload.get("events"), list):
            return list(payload["events"])
        if isinstance(payload, Mapping):
            return [payload]
        raise MalformedEvent("fastspring payload is neither an event nor a batch")

    def normalize(self, event: Mapping[str, Any]) -> ProviderEvent:
        pe = super().normalize(event)
        data = self.data(event)
        if pe.event_type == "subscription.deactivated":
            # Deactivation is the end of the paid period, not a scheduled one.
            ended = first_instant(data, (path("deactivationDate"), path("deactivationDateValue")))
            return replace(pe, ends_at=ended or pe.occurred_at or now_ts())
        if pe.event_type not in ORDER_TYPES:
            return pe

        sub = order_subscription(data)
        if sub is None:
            # Plain purchase, e.g. a credit package.
            return replace(pe, signal=None, subscription_id=None, ends_at=None)
        return replace(
            pe,
            subscription_id=first_str(sub, (path("id"), path("subscription"))),
            user_ref=first_str(sub, self.user_ref_paths) or pe.user_ref,
            plan=first_plan(sub, self.plan_paths, default=pe.plan),
            ends_at=first_instant(sub, self.ends_at_paths),
        )

    def fetch_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        if not (S.fastspring_api_username and S.fastspring_api_password):
            raise ProviderUnavailable("fastspring is not configured")
        try:
            resp = requests.get(
                f"{S.fastspring_base_url}/subscriptions/{subscription_id}",
                auth=(S.fastspring_api_username, S.fastspring_api_password),
                timeout=S.provider_http_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderUnavailable(f"fastspring request failed: {exc}") from exc
        if resp.status_code == 404:
            raise MalformedEvent(f"unknown fastspring subscription {subscription_id}")
        if resp.status_code >= 400:
            logger.warning("fastspring subscription fetch failed id=%s status=%s", subscription_id, resp.status_code)
            raise ProviderUnavailable(f"fastspring returned {resp.status_code}")
        body = resp.json() or {}
        subs = body.get("subscriptions") if isinstance(body, Mapping) else None
        if isinstance(subs, list):
            body = subs[0] if subs else {}
        if not isinstance(body, Mapping) or not body:
            raise MalformedEvent("fastspring subscription response is empty")
        return body
