from __future__ import annotations

import logging
from typing import Dict, Type

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from entitlements.core.errors import (
    AlreadyLinked,
    CharacterNotFound,
    EntitlementError,
    InsufficientCredits,
    InvalidSignature,
    LockedCharacter,
    MalformedEvent,
    ProviderUnavailable,
    QuotaExceeded,
    SlotLimitReached,
    StoreUnavailable,
    UnresolvableUser,
)
from entitlements.metrics import record_denial

logger = logging.getLogger(__name__)

STATUS_BY_ERROR: Dict[Type[EntitlementError], int] = {
    InvalidSignature: 400,
    MalformedEvent: 400,
    InsufficientCredits: 402,
    LockedCharacter: 403,
    SlotLimitReached: 403,
    CharacterNotFound: 404,
    AlreadyLinked: 409,
    UnresolvableUser: 422,
    QuotaExceeded: 429,
    ProviderUnavailable: 502,
    StoreUnavailable: 503,
}

DENIALS = (InsufficientCredits, LockedCharacter, SlotLimitReached, QuotaExceeded)


def http_error(exc: EntitlementError) -> HTTPException:
    """HTTPException carrying the error's structured detail."""
    status = 500
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            status = STATUS_BY_ERROR[cls]
            break
    if isinstance(exc, DENIALS):
        record_denial(exc.code)
    return HTTPException(status_code=status, detail=exc.to_dict())


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """Domain errors that escape a route or dependency, mapped like http_error."""
    err = http_error(exc)
    if err.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=err.status_code, content={"detail": err.detail})
