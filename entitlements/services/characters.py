from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from entitlements.core.errors import CharacterNotFound, LockedCharacter, SlotLimitReached
from entitlements.core.store import as_int, get_item, is_conditional_failure, store_errors
from entitlements.core.tables import T
from entitlements.core.time import now_ms, now_ts
from entitlements.services.audit import audit_event
from entitlements.services.entitlements import resolve_user
from entitlements.services.users import require_user

logger = logging.getLogger(__name__)

OrderKey = Tuple[int, str]


def order_key(character: Dict[str, Any]) -> OrderKey:
    return as_int(character.get("created_at")), str(character.get("character_id"))


@dataclass
class AccessView:
    slots: int
    accessible: List[Dict[str, Any]] = field(default_factory=list)
    locked: List[Dict[str, Any]] = field(default_factory=list)
    active_character_id: Optional[str] = None

    def is_accessible(self, character_id: str) -> bool:
        return any(c["character_id"] == character_id for c in self.accessible)

    def find(self, character_id: str) -> Optional[Dict[str, Any]]:
        for c in self.accessible + self.locked:
            if c["character_id"] == character_id:
                return c
        return None

    def to_dict(self) -> Dict[str, Any]:
        def row(c: Dict[str, Any], locked: bool) -> Dict[str, Any]:
            return {
                "character_id": c["character_id"],
                "name": c.get("name", ""),
                "created_at": as_int(c.get("created_at")),
                "is_active": c["character_id"] == self.active_character_id,
                "locked": locked,
            }

        return {
            "slots": self.slots,
            "active_character_id": self.active_character_id,
            "accessible": [row(c, False) for c in self.accessible],
            "locked": [row(c, True) for c in self.locked],
        }


def list_characters(user_sub: str) -> List[Dict[str, Any]]:
    """All of a user's characters, oldest first."""
    items: List[Dict[str, Any]] = []
    last_key = None
    while True:
        kwargs: Dict[str, Any] = {"KeyConditionExpression": Key("user_sub").eq(user_sub), "Limit": 200}
        if last_key:
            kwargs["ExclusiveStartKey"] = last_key
        with store_errors():
            resp = T.characters.query(**kwargs)
        items.extend(resp.get("Items", []))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            break
    return sorted(items, key=order_key)


def split_by_slots(
    characters: Sequence[Dict[str, Any]], slots: int
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    ordered = sorted(characters, key=order_key)
    n = max(0, int(slots))
    return list(ordered[:n]), list(ordered[n:])


def pick_replacement(candidates: Sequence[Dict[str, Any]], pivot: Optional[OrderKey]) -> Optional[Dict[str, Any]]:
    """Choose the character that should take over from `pivot`.

    Prefers the nearest candidate created before the pivot, then the nearest
    created after it. With no pivot the oldest candidate wins.
    """
    ordered = sorted(candidates, key=order_key)
    if not ordered:
        return None
    if pivot is None:
        return ordered[0]
    older = [c for c in ordered if order_key(c) < pivot]
    if older:
        return older[-1]
    newer = [c for c in ordered if order_key(c) > pivot]
    return newer[0] if newer else None


def get_access(user_sub: str, user: Optional[Dict[str, Any]] = None) -> AccessView:
    user = user or require_user(user_sub)
    slots = resolve_user(user).slots
    accessible, locked = split_by_slots(list_characters(user_sub), slots)
    return AccessView(
        slots=slots,
        accessible=accessible,
        locked=locked,
        active_character_id=user.get("active_character_id"),
    )


def can_access(user_sub: str, character_id: str) -> bool:
    return get_access(user_sub).is_accessible(character_id)


def _set_active(user_sub: str, new_id: Optional[str], expected: Optional[str]) -> bool:
    """Move the active pointer only if nobody moved it since we read `expected`."""
    if expected is None:
        condition = "attribute_not_exists(active_character_id)"
        values: Dict[str, Any] = {":now": now_ts()}
    else:
        condition = "active_character_id = :old"
        values = {":now": now_ts(), ":old": expected}
    if new_id is None:
        update = "REMOVE active_character_id SET updated_at = :now"
    else:
        update = "SET active_character_id = :new, updated_at = :now"
        values[":new"] = new_id
    try:
        with store_errors():
            T.users.update_item(
                Key={"user_sub": user_sub},
                UpdateExpression=update,
                ConditionExpression=condition,
                ExpressionAttributeValues=values,
            )
        return True
    except ClientError as exc:
        if not is_conditional_failure(exc):
            raise
        logger.info("active character moved concurrently user_sub=%s expected=%s", user_sub, expected)
        return False


def switch_active(user_sub: str, character_id: str) -> AccessView:
    view = get_access(user_sub)
    if view.find(character_id) is None:
        raise CharacterNotFound("character not found", character_id=character_id)
    if not view.is_accessible(character_id):
        raise LockedCharacter(character_id, view.slots)

    with store_errors():
        T.users.update_item(
            Key={"user_sub": user_sub},
            UpdateExpression="SET active_character_id = :cid, updated_at = :now",
            ConditionExpression="attribute_exists(user_sub)",
            ExpressionAttributeValues={":cid": character_id, ":now": now_ts()},
        )
    audit_event("character_switched", user_sub, character_id=character_id)
    view.active_character_id = character_id
    return view


def create_character(user_sub: str, name: str, character_id: Optional[str] = None) -> Dict[str, Any]:
    user = require_user(user_sub)
    slots = resolve_user(user).slots
    owned = len(list_characters(user_sub))
    if owned >= slots:
        raise SlotLimitReached(slots, owned)

    item = {
        "user_sub": user_sub,
        "character_id": character_id or uuid.uuid4().hex,
        "name": name,
        "created_at": now_ms(),
    }
    with store_errors():
        T.characters.put_item(Item=item, ConditionExpression="attribute_not_exists(character_id)")
        T.users.update_item(
            Key={"user_sub": user_sub},
            UpdateExpression="SET active_character_id = :cid, updated_at = :now",
            ExpressionAttributeValues={":cid": item["character_id"], ":now": now_ts()},
        )
    audit_event("character_created", user_sub, character_id=item["character_id"])
    return item


def reassign_on_deletion(user_sub: str, deleted: Dict[str, Any]) -> Optional[str]:
    """Pick a new active character after `deleted` was removed.

    Only acts when the deleted character was the active one. Returns the
    active character id after the call.
    """
    user = require_user(user_sub)
    active = user.get("active_character_id")
    if active != deleted["character_id"]:
        return active

    accessible, _ = split_by_slots(list_characters(user_sub), resolve_user(user).slots)
    replacement = pick_replacement(accessible, order_key(deleted))
    new_id = replacement["character_id"] if replacement else None
    if _set_active(user_sub, new_id, active):
        audit_event("active_character_reassigned", user_sub, previous=active, active=new_id, reason="deleted")
        return new_id
    return require_user(user_sub).get("active_character_id")


def delete_character(user_sub: str, character_id: str) -> Optional[str]:
    character = get_item(T.characters, {"user_sub": user_sub, "character_id": character_id})
    if not character:
        raise CharacterNotFound("character not found", character_id=character_id)
    with store_errors():
        T.characters.delete_item(Key={"user_sub": user_sub, "character_id": character_id})
    audit_event("character_deleted", user_sub, character_id=character_id)
    return reassign_on_deletion(user_sub, character)


def enforce_slot_limit(user_sub: str) -> Optional[str]:
    """Keep the active pointer inside the accessible set after a slot change.

    Nothing is deleted. When the active character is locked out, the
    replacement is chosen with the same tie-break as deletion, pivoting on
    the locked character.
    """
    user = require_user(user_sub)
    characters = list_characters(user_sub)
    accessible, _ = split_by_slots(characters, resolve_user(user).slots)
    active = user.get("active_character_id")
    if active and any(c["character_id"] == active for c in accessible):
        return active
    if not active and not accessible:
        return None

    current = next((c for c in characters if c["character_id"] == active), None)
    replacement = pick_replacement(accessible, order_key(current) if current else None)
    new_id = replacement["character_id"] if replacement else None
    if _set_active(user_sub, new_id, active):
        audit_event("active_character_reassigned", user_sub, previous=active, active=new_id, reason="slot_limit")
        return new_id
    return require_user(user_sub).get("active_character_id")


def get_active_character(user_sub: str) -> Optional[Dict[str, Any]]:
    """The active character, healing a pointer that fell outside the accessible set."""
    view = get_access(user_sub)
    if view.active_character_id and view.is_accessible(view.active_character_id):
        return view.find(view.active_character_id)
    new_id = enforce_slot_limit(user_sub)
    return view.find(new_id) if new_id else None
