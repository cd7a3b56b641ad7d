from __future__ import annotations

import json
import logging
from typing import Any, Dict

from entitlements.core.time import now_ts

audit_logger = logging.getLogger("entitlements.audit")


def audit_event(event: str, user_sub: str, **fields: Any) -> None:
    """Emit one JSON line describing a state transition."""
    payload: Dict[str, Any] = {"event": event, "user_sub": user_sub, "ts": now_ts(), **fields}
    audit_logger.info(json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str))
