from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from entitlements.core.errors import MalformedEvent
from entitlements.core.time import parse_instant
from entitlements.services.entitlements import PLAN_MONTHLY, normalize_plan

Strategy = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class ProviderEvent:
    """One provider notification reduced to the fields the engine acts on.

    `signal` is None for events that carry nothing subscription related
    (credit-package orders, informational types). `plan` has already been
    run through the billing-cycle strategies and is never None.
    """

    provider: str
    event_type: str
    event_id: Optional[str] = None
    occurred_at: Optional[int] = None
    signal: Optional[str] = None
    subscription_id: Optional[str] = None
    account_id: Optional[str] = None
    user_ref: Optional[str] = None
    plan: str = PLAN_MONTHLY
    ends_at: Optional[int] = None
    order_id: Optional[str] = None
    products: Tuple[str, ...] = ()
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


# ---------------------------------------------------------------------------
# Extraction strategies


def path(dotted: str) -> Strategy:
    """Strategy reading a dotted path; numeric segments index into lists."""
    parts = dotted.split(".")

    def get(obj: Mapping[str, Any]) -> Any:
        cur: Any = obj
        for part in parts:
            if isinstance(cur, Mapping):
                cur = cur.get(part)
            elif isinstance(cur, (list, tuple)) and part.isdigit():
                idx = int(part)
                cur = cur[idx] if idx < len(cur) else None
            else:
                return None
            if cur is None:
                return None
        return cur

    get.__name__ = f"path({dotted})"
    return get


def json_field(source: Strategy, key: str) -> Strategy:
    """Strategy reading `key` from a value that may be a dict or a JSON string."""

    def get(obj: Mapping[str, Any]) -> Any:
        value = source(obj)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                return None
        return value.get(key) if isinstance(value, Mapping) else None

    return get


def first(obj: Mapping[str, Any], strategies: Sequence[Strategy], default: Any = None) -> Any:
    for strategy in strategies:
        value = strategy(obj)
        if value not in (None, "", [], {}):
            return value
    return default


def first_str(obj: Mapping[str, Any], strategies: Sequence[Strategy]) -> Optional[str]:
    value = first(obj, strategies)
    return str(value) if value is not None else None


def first_plan(obj: Mapping[str, Any], strategies: Sequence[Strategy], default: str = PLAN_MONTHLY) -> str:
    """First strategy whose value names a billing cycle wins."""
    for strategy in strategies:
        plan = normalize_plan(strategy(obj))
        if plan:
            return plan
    return default


def first_instant(obj: Mapping[str, Any], strategies: Sequence[Strategy]) -> Optional[int]:
    for strategy in strategies:
        ts = parse_instant(strategy(obj))
        if ts is not None:
            return ts
    return None


def load_json(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedEvent(f"payload is not JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# Adapter interface


class WebhookAdapter:
    """Per-provider verify + parse + map.

    Subclasses fill in the strategy lists and the event-type table; the
    generic `normalize` walks them in order.
    """

    name = ""
    signature_header = ""

    # event type -> lifecycle signal; absent types are ignored
    signals: Dict[str, str] = {}
    # provider status -> lifecycle signal, consulted for "updated" style events
    status_signals: Dict[str, str] = {}
    status_refined_types: Tuple[str, ...] = ()
    order_types: Tuple[str, ...] = ()

    event_id_paths: Sequence[Strategy] = ()
    event_type_paths: Sequence[Strategy] = ()
    occurred_at_paths: Sequence[Strategy] = ()
    data_paths: Sequence[Strategy] = ()

    user_ref_paths: Sequence[Strategy] = ()
    subscription_id_paths: Sequence[Strategy] = ()
    account_id_paths: Sequence[Strategy] = ()
    status_paths: Sequence[Strategy] = ()
    plan_paths: Sequence[Strategy] = ()
    ends_at_paths: Sequence[Strategy] = ()
    order_id_paths: Sequence[Strategy] = ()
    product_paths: Sequence[Strategy] = ()

    def parse(self, body: bytes, headers: Mapping[str, str]) -> List[Mapping[str, Any]]:
        """Verify the delivery and split it into individual events.

        Raises InvalidSignature before anything else is looked at.
        """
        raise NotImplementedError

    def fetch_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        """Subscription object from the provider's REST API, shaped like webhook `data`."""
        raise NotImplementedError

    # -- mapping -------------------------------------------------------

    def data(self, event: Mapping[str, Any]) -> Mapping[str, Any]:
        value = first(event, self.data_paths)
        return value if isinstance(value, Mapping) else event

    def status_signal(self, data: Mapping[str, Any]) -> Optional[str]:
        status = first_str(data, self.status_paths)
        return self.status_signals.get((status or "").lower())

    def signal_for(self, event_type: str, data: Mapping[str, Any]) -> Optional[str]:
        signal = self.signals.get(event_type)
        if signal and event_type in self.status_refined_types:
            return self.status_signal(data) or signal
        return signal

    def products(self, data: Mapping[str, Any]) -> Tuple[str, ...]:
        out: List[str] = []
        for strategy in self.product_paths:
            value = strategy(data)
            if isinstance(value, (list, tuple)):
                out.extend(str(v) for v in value if v)
            elif value:
                out.append(str(value))
        return tuple(dict.fromkeys(out))

    def normalize(self, event: Mapping[str, Any]) -> ProviderEvent:
        if not isinstance(event, Mapping):
            raise MalformedEvent("event is not an object")
        event_type = first_str(event, self.event_type_paths)
        if not event_type:
            raise MalformedEvent("event has no type")
        data = self.data(event)
        return ProviderEvent(
            provider=self.name,
            event_type=event_type,
            event_id=first_str(event, self.event_id_paths),
            occurred_at=first_instant(event, self.occurred_at_paths),
            signal=self.signal_for(event_type, data),
            subscription_id=first_str(data, self.subscription_id_paths),
            account_id=first_str(data, self.account_id_paths),
            user_ref=first_str(data, self.user_ref_paths),
            plan=first_plan(data, self.plan_paths),
            ends_at=first_instant(data, self.ends_at_paths),
            order_id=first_str(data, self.order_id_paths) if event_type in self.order_types else None,
            products=self.products(data) if event_type in self.order_types else (),
            raw=event,
        )

    def normalize_subscription(self, subscription: Mapping[str, Any]) -> ProviderEvent:
        """Map a fetched subscription object as if it arrived as an update."""
        signal = self.status_signal(subscription)
        if signal is None:
            status = first_str(subscription, self.status_paths)
            raise MalformedEvent(f"unrecognised subscription status {status!r}")
        return ProviderEvent(
            provider=self.name,
            event_type="subscription.fetched",
            signal=signal,
            subscription_id=first_str(subscription, self.subscription_id_paths),
            account_id=first_str(subscription, self.account_id_paths),
            user_ref=first_str(subscription, self.user_ref_paths),
            plan=first_plan(subscription, self.plan_paths),
            ends_at=first_instant(subscription, self.ends_at_paths),
            raw=subscription,
        )


def header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value or ""
    return ""


def ref(dotted: str) -> Strategy:
    """Strategy for a reference that may be an id string or an expanded object."""
    get = path(dotted)

    def get_id(obj: Mapping[str, Any]) -> Any:
        value = get(obj)
        if isinstance(value, Mapping):
            return value.get("id")
        return value

    return get_id
