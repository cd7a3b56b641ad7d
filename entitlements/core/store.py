from __future__ import annotations

from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import StoreUnavailable
from .settings import S

CONDITIONAL_FAILED = "ConditionalCheckFailedException"


def is_conditional_failure(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and exc.response.get("Error", {}).get("Code") == CONDITIONAL_FAILED


@contextmanager
def store_errors() -> Iterator[None]:
    """Translate unexpected DynamoDB failures into StoreUnavailable.

    Conditional check failures are domain outcomes and pass through untouched
    so callers can handle them.
    """
    try:
        yield
    except ClientError as exc:
        if is_conditional_failure(exc):
            raise
        raise StoreUnavailable(str(exc)) from exc
    except BotoCoreError as exc:
        raise StoreUnavailable(str(exc)) from exc


def as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, (int, Decimal, float)):
        return int(value)
    try:
        return int(str(value))
    except ValueError:
        return default


def as_opt_int(value: Any) -> Optional[int]:
    return None if value is None else as_int(value)


def get_item(table: Any, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    with store_errors():
        return table.get_item(Key=key, ConsistentRead=True).get("Item")


def with_ttl(item: Dict[str, Any], ttl_epoch: int) -> Dict[str, Any]:
    item[S.ddb_ttl_attr] = int(ttl_epoch)
    return item
