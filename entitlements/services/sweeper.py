from __future__ import annotations

import logging
from typing import Dict, Optional

from entitlements.core.errors import StoreUnavailable
from entitlements.core.settings import S
from entitlements.core.store import as_opt_int
from entitlements.core.time import now_ts
from entitlements.services import subscriptions
from entitlements.services.entitlements import STATUS_CANCELED
from entitlements.services.users import scan_users

logger = logging.getLogger(__name__)


def _expired(user: Dict, now: int) -> bool:
    ends_at = as_opt_int(user.get("subscription_ends_at"))
    return user.get("subscription_status") == STATUS_CANCELED and ends_at is not None and ends_at <= now


def sweep(batch_size: Optional[int] = None, now: Optional[int] = None) -> Dict[str, int]:
    """Expire lapsed cancellations and repair cached slot counts.

    Pages through the users table `batch_size` rows at a time. Each user is
    handled by an independent conditional write, so an interrupted run can
    simply be started again.
    """
    ts = now_ts() if now is None else now
    limit = batch_size or S.sweep_batch_size
    stats = {"scanned": 0, "expired": 0, "repaired": 0, "skipped": 0, "errors": 0, "batches": 0}
    start_key = None
    while True:
        users, start_key = scan_users(limit=limit, start_key=start_key)
        stats["batches"] += 1
        for user in users:
            stats["scanned"] += 1
            try:
                if _expired(user, ts):
                    if subscriptions.expire_subscription(user["user_sub"], now=ts):
                        stats["expired"] += 1
                elif subscriptions.refresh_character_slots(user, now=ts):
                    stats["repaired"] += 1
            except StoreUnavailable:
                logger.exception("sweep failed for user_sub=%s", user["user_sub"])
                stats["errors"] += 1
            except LookupError:
                logger.info("user vanished during sweep user_sub=%s", user["user_sub"])
                stats["skipped"] += 1
        if not start_key:
            break
    logger.info("reconciliation sweep done %s", stats)
    return stats
