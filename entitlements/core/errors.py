from __future__ import annotations

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base class for domain errors raised by the engine."""

    code = "entitlement_error"

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.detail}


# Webhook path

class InvalidSignature(EntitlementError):
    code = "invalid_signature"


class MalformedEvent(EntitlementError):
    code = "malformed_event"


class UnresolvableUser(EntitlementError):
    code = "unresolvable_user"


class StoreUnavailable(EntitlementError):
    code = "store_unavailable"


class AlreadyLinked(EntitlementError):
    code = "already_linked"


class ProviderUnavailable(EntitlementError):
    code = "provider_unavailable"


# User-facing denials

class LockedCharacter(EntitlementError):
    code = "character_locked"

    def __init__(self, character_id: str, slots: int) -> None:
        super().__init__(
            "This character is locked. Upgrade your plan to access all characters.",
            character_id=character_id,
            slots=slots,
        )


class CharacterNotFound(EntitlementError):
    code = "character_not_found"


class QuotaExceeded(EntitlementError):
    code = "quota_exceeded"

    def __init__(self, usage_type: str, limit: int, remaining: int = 0, resets_at: Optional[str] = None) -> None:
        super().__init__(
            f"Daily {usage_type} limit reached",
            usage_type=usage_type,
            limit=limit,
            remaining=remaining,
            resets_at=resets_at,
        )


class InsufficientCredits(EntitlementError):
    code = "insufficient_credits"

    def __init__(self, required: int, balance: int) -> None:
        super().__init__(
            f"Not enough credits. You need {required} but only have {balance}.",
            required=required,
            balance=balance,
        )


class SlotLimitReached(EntitlementError):
    code = "slot_limit_reached"

    def __init__(self, slots: int, owned: int) -> None:
        super().__init__(
            "Character slot limit reached. Upgrade to create more characters.",
            slots=slots,
            owned=owned,
        )
