from __future__ import annotations

import copy
import re
import threading
import unittest
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from entitlements.core.settings import S
from entitlements.core.tables import T
from entitlements.core.time import now_ts

_TOKEN = re.compile(r"\s*(<>|<=|>=|=|<|>|\(|\)|,|[:#]?[A-Za-z_][A-Za-z0-9_.]*)")
_MISSING = object()


def conditional_failure(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        op,
    )


def _tokenize(expr: str) -> List[str]:
    tokens: List[str] = []
    pos = 0
    expr = expr.strip()
    while pos < len(expr):
        m = _TOKEN.match(expr, pos)
        if not m:
            raise ValueError(f"cannot tokenize {expr[pos:]!r}")
        tokens.append(m.group(1))
        pos = m.end()
    return tokens


class _Condition:
    """Recursive-descent evaluator for the condition/filter subset we use."""

    def __init__(self, expr: str, names: Dict[str, str], values: Dict[str, Any], item: Dict[str, Any]) -> None:
        self.tokens = _tokenize(expr)
        self.pos = 0
        self.names = names
        self.values = values
        self.item = item

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> str:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def evaluate(self) -> bool:
        result = self._or()
        if self.pos != len(self.tokens):
            raise ValueError(f"trailing tokens {self.tokens[self.pos:]}")
        return result

    def _or(self) -> bool:
        left = self._and()
        while self._peek() == "OR":
            self._take()
            right = self._and()
            left = left or right
        return left

    def _and(self) -> bool:
        left = self._not()
        while self._peek() == "AND":
            self._take()
            right = self._not()
            left = left and right
        return left

    def _not(self) -> bool:
        if self._peek() == "NOT":
            self._take()
            return not self._not()
        return self._primary()

    def _primary(self) -> bool:
        tok = self._take()
        if tok == "(":
            result = self._or()
            self._take()
            return result
        if tok in ("attribute_exists", "attribute_not_exists"):
            self._take()
            name = self._name(self._take())
            self._take()
            exists = name in self.item
            return exists if tok == "attribute_exists" else not exists
        left = self._operand(tok)
        op = self._take()
        right = self._operand(self._take())
        return _compare(left, op, right)

    def _name(self, tok: str) -> str:
        return self.names.get(tok, tok)

    def _operand(self, tok: str) -> Any:
        if tok.startswith(":"):
            return self.values[tok]
        return self.item.get(self._name(tok), _MISSING)


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is _MISSING or right is _MISSING:
        return op == "<>"
    if op == "=":
        return left == right
    if op == "<>":
        return left != right
    if left is None or right is None or isinstance(left, bool) != isinstance(right, bool):
        return False
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
    except TypeError:
        return False
    raise ValueError(f"unknown operator {op}")


def _split_top(text: str, sep: str = ",") -> List[str]:
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if "".join(current).strip():
        parts.append("".join(current).strip())
    return parts


class FakeDynamoTable:
    """In-memory stand-in for a boto3 Table with conditional writes."""

    def __init__(self, key_attrs: Tuple[str, ...], indexes: Optional[Dict[str, str]] = None) -> None:
        self.key_attrs = key_attrs
        self.indexes = indexes or {}
        self.items: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        self.error_code: Optional[str] = None
        self._lock = threading.RLock()

    # helpers

    def _check_error(self, op: str) -> None:
        if self.error_code:
            raise ClientError({"Error": {"Code": self.error_code, "Message": "injected"}}, op)

    def _key(self, key: Dict[str, Any]) -> Tuple[Any, ...]:
        return tuple(key[a] for a in self.key_attrs)

    def _check(self, op: str, item: Dict[str, Any], expr: Optional[str], names, values) -> None:
        if expr and not _Condition(expr, names or {}, values or {}, item).evaluate():
            raise conditional_failure(op)

    def _sorted(self) -> List[Dict[str, Any]]:
        return [self.items[k] for k in sorted(self.items, key=lambda k: tuple(str(p) for p in k))]

    def _page(self, items: List[Dict[str, Any]], limit: Optional[int], start: Optional[Dict[str, Any]]):
        if start:
            start_key = self._key(start)
            keys = [self._key(i) for i in items]
            items = items[keys.index(start_key) + 1:] if start_key in keys else items
        if limit is not None and len(items) > limit:
            page = items[:limit]
            return page, {a: page[-1][a] for a in self.key_attrs}
        return items, None

    def put(self, item: Dict[str, Any]) -> None:
        self.items[self._key(item)] = copy.deepcopy(item)

    def get(self, **key: Any) -> Optional[Dict[str, Any]]:
        return self.items.get(self._key(key))

    # boto3 Table surface

    def get_item(self, *, Key: Dict[str, Any], **_: Any) -> Dict[str, Any]:
        self._check_error("GetItem")
        with self._lock:
            item = self.items.get(self._key(Key))
            return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(
        self,
        *,
        Item: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._check_error("PutItem")
        with self._lock:
            current = self.items.get(self._key(Item), {})
            self._check("PutItem", current, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues)
            self.items[self._key(Item)] = copy.deepcopy(Item)
        return {}

    def delete_item(
        self,
        *,
        Key: Dict[str, Any],
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._check_error("DeleteItem")
        with self._lock:
            current = self.items.get(self._key(Key), {})
            self._check("DeleteItem", current, ConditionExpression, ExpressionAttributeNames, ExpressionAttributeValues)
            self.items.pop(self._key(Key), None)
        return {}

    def update_item(
        self,
        *,
        Key: Dict[str, Any],
        UpdateExpression: str,
        ConditionExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        ReturnValues: str = "NONE",
        **_: Any,
    ) -> Dict[str, Any]:
        self._check_error("UpdateItem")
        names = ExpressionAttributeNames or {}
        values = ExpressionAttributeValues or {}
        with self._lock:
            current = self.items.get(self._key(Key))
            self._check("UpdateItem", current or {}, ConditionExpression, names, values)
            item = copy.deepcopy(current) if current is not None else dict(Key)
            touched = self._apply_update(item, UpdateExpression, names, values)
            self.items[self._key(Key)] = item
            if ReturnValues == "UPDATED_NEW":
                return {"Attributes": {a: copy.deepcopy(item[a]) for a in touched if a in item}}
            if ReturnValues == "ALL_NEW":
                return {"Attributes": copy.deepcopy(item)}
        return {}

    def _apply_update(self, item: Dict[str, Any], expr: str, names, values) -> List[str]:
        touched: List[str] = []
        parts = re.split(r"\b(SET|ADD|REMOVE)\b", expr)
        clauses = zip(parts[1::2], parts[2::2])

        def resolve(term: str) -> Any:
            term = term.strip()
            if term.startswith("if_not_exists"):
                attr, fallback = _split_top(term[term.index("(") + 1:term.rindex(")")])
                attr = names.get(attr, attr)
                return item[attr] if attr in item else resolve(fallback)
            if term.startswith(":"):
                return values[term]
            return item.get(names.get(term, term))

        for keyword, body in clauses:
            for assignment in _split_top(body):
                if keyword == "REMOVE":
                    attr = names.get(assignment, assignment)
                    item.pop(attr, None)
                    touched.append(attr)
                elif keyword == "ADD":
                    path, operand = assignment.split(None, 1)
                    attr = names.get(path, path)
                    item[attr] = (item.get(attr) or 0) + values[operand.strip()]
                    touched.append(attr)
                else:
                    left, right = assignment.split("=", 1)
                    attr = names.get(left.strip(), left.strip())
                    m = re.match(r"^(if_not_exists\(.*\)|[#:]?[\w.]+)\s*([+-])\s*(:\w+)$", right.strip())
                    if m:
                        base = resolve(m.group(1)) or 0
                        delta = resolve(m.group(3))
                        item[attr] = base + delta if m.group(2) == "+" else base - delta
                    else:
                        item[attr] = resolve(right)
                    touched.append(attr)
        return touched

    def query(
        self,
        *,
        KeyConditionExpression: Any,
        IndexName: Optional[str] = None,
        Limit: Optional[int] = None,
        ExclusiveStartKey: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._check_error("Query")
        key_obj, value = KeyConditionExpression.get_expression()["values"]
        attr = key_obj.name
        if IndexName is not None and self.indexes.get(IndexName) != attr:
            raise ValueError(f"unknown index {IndexName}")
        with self._lock:
            matches = [copy.deepcopy(i) for i in self._sorted() if i.get(attr) == value]
        page, last = self._page(matches, Limit, None if IndexName else ExclusiveStartKey)
        resp: Dict[str, Any] = {"Items": page}
        if last and IndexName is None:
            resp["LastEvaluatedKey"] = last
        return resp

    def scan(
        self,
        *,
        FilterExpression: Optional[str] = None,
        ExpressionAttributeNames: Optional[Dict[str, str]] = None,
        ExpressionAttributeValues: Optional[Dict[str, Any]] = None,
        Limit: Optional[int] = None,
        ExclusiveStartKey: Optional[Dict[str, Any]] = None,
        **_: Any,
    ) -> Dict[str, Any]:
        self._check_error("Scan")
        with self._lock:
            everything = [copy.deepcopy(i) for i in self._sorted()]
        # Limit bounds the items examined, not the items returned.
        page, last = self._page(everything, Limit, ExclusiveStartKey)
        if FilterExpression:
            page = [
                i for i in page
                if _Condition(FilterExpression, ExpressionAttributeNames or {}, ExpressionAttributeValues or {}, i).evaluate()
            ]
        resp: Dict[str, Any] = {"Items": page}
        if last:
            resp["LastEvaluatedKey"] = last
        return resp


def build_tables() -> Dict[str, FakeDynamoTable]:
    return {
        "users": FakeDynamoTable(("user_sub",), {S.users_subscription_index: "subscription_id"}),
        "characters": FakeDynamoTable(("user_sub", "character_id")),
        "daily_usage": FakeDynamoTable(("user_sub", "usage_key")),
        "pending_checkouts": FakeDynamoTable(("user_sub",)),
        "billing": FakeDynamoTable(("pk", "sk")),
    }


class StoreTestCase(unittest.TestCase):
    """Swaps every table for an in-memory fake for the duration of a test."""

    def setUp(self) -> None:
        super().setUp()
        # Some reads resolve against the wall clock, so tests anchor on it too.
        self.now = now_ts()
        fakes = build_tables()
        for name, table in fakes.items():
            original = getattr(T, name)
            object.__setattr__(T, name, table)
            self.addCleanup(object.__setattr__, T, name, original)
            setattr(self, name, table)

    def override(self, **settings: Any) -> None:
        for name, value in settings.items():
            original = getattr(S, name)
            object.__setattr__(S, name, value)
            self.addCleanup(object.__setattr__, S, name, original)

    def add_user(self, user_sub: str = "user-1", **fields: Any) -> Dict[str, Any]:
        item = {
            "user_sub": user_sub,
            "subscription_plan": "free",
            "subscription_status": "free",
            "subscription_ends_at": None,
            "character_slots": S.free_character_slots,
            "credits": 0,
            "has_purchased_starter_kit": False,
            "timezone": "UTC",
            "created_at": self.now - 86400,
            "updated_at": self.now - 86400,
        }
        item.update(fields)
        self.users.put(item)
        return item

    def add_premium_user(self, user_sub: str = "user-1", **fields: Any) -> Dict[str, Any]:
        defaults = {
            "subscription_plan": "monthly",
            "subscription_status": "active",
            "subscription_ends_at": self.now + 30 * 86400,
            "subscription_id": f"sub_{user_sub}",
            "character_slots": S.premium_character_slots,
        }
        defaults.update(fields)
        return self.add_user(user_sub, **defaults)

    def add_character(self, user_sub: str, character_id: str, created_at: int, name: str = "") -> Dict[str, Any]:
        item = {"user_sub": user_sub, "character_id": character_id, "name": name or character_id, "created_at": created_at}
        self.characters.put(item)
        return item
