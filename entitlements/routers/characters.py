from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from entitlements.auth.deps import require_account
from entitlements.core.errors import EntitlementError
from entitlements.models import CharacterAccessResp, CharacterCreateReq, CharacterOut
from entitlements.routers.common import http_error
from entitlements.services import characters

router = APIRouter(tags=["characters"])


@router.get("/api/characters/access", response_model=CharacterAccessResp)
def get_access(ctx=Depends(require_account)) -> Dict[str, Any]:
    characters.get_active_character(ctx["user_sub"])
    return characters.get_access(ctx["user_sub"]).to_dict()


@router.post("/api/characters", response_model=CharacterOut)
def create_character(body: CharacterCreateReq, ctx=Depends(require_account)) -> Dict[str, Any]:
    try:
        item = characters.create_character(ctx["user_sub"], body.name, character_id=body.character_id)
    except EntitlementError as exc:
        raise http_error(exc) from exc
    return {**item, "is_active": True, "locked": False}


@router.post("/api/characters/{character_id}/switch", response_model=CharacterAccessResp)
def switch_character(character_id: str, ctx=Depends(require_account)) -> Dict[str, Any]:
    try:
        view = characters.switch_active(ctx["user_sub"], character_id)
    except EntitlementError as exc:
        raise http_error(exc) from exc
    return view.to_dict()


@router.delete("/api/characters/{character_id}")
def delete_character(character_id: str, ctx=Depends(require_account)) -> Dict[str, Any]:
    try:
        active = characters.delete_character(ctx["user_sub"], character_id)
    except EntitlementError as exc:
        raise http_error(exc) from exc
    return {"deleted": True, "active_character_id": active}
