from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .aws import ddb
from .settings import S

@dataclass(frozen=True)
class Tables:
    users: Any
    characters: Any
    daily_usage: Any
    pending_checkouts: Any
    billing: Any

T = Tables(
    users=ddb.Table(S.users_table_name),
    characters=ddb.Table(S.characters_table_name),
    daily_usage=ddb.Table(S.daily_usage_table_name),
    pending_checkouts=ddb.Table(S.pending_checkouts_table_name),
    billing=ddb.Table(S.billing_table_name),
)
