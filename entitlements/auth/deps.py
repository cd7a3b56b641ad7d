from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException, Request

from entitlements.core.crypto import constant_time_equals
from entitlements.core.settings import S
from entitlements.services.users import ensure_user


@lru_cache(maxsize=1)
def _jwks_client() -> jwt.PyJWKClient:
    return jwt.PyJWKClient(S.auth_jwks_url)


def _decode_token(token: str) -> Dict[str, Any]:
    options = {"verify_aud": bool(S.auth_audience)}
    kwargs: Dict[str, Any] = {"options": options}
    if S.auth_audience:
        kwargs["audience"] = S.auth_audience
    if S.auth_issuer:
        kwargs["issuer"] = S.auth_issuer
    try:
        if S.auth_jwks_url:
            key = _jwks_client().get_signing_key_from_jwt(token).key
            return jwt.decode(token, key, algorithms=["RS256", "ES256"], **kwargs)
        return jwt.decode(token, S.auth_jwt_secret, algorithms=["HS256"], **kwargs)
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(401, "Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(401, "Invalid token") from exc


def extract_bearer_token(auth_header: Optional[str]) -> str:
    if not auth_header:
        raise HTTPException(401, "Missing Authorization header")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Invalid Authorization header")
    return token.strip()


async def get_authenticated_user_sub(request: Request) -> str:
    """
    Bearer JWT validated against AUTH_JWKS_URL or AUTH_JWT_SECRET.

    Dev fallback (AUTH_DEV_FALLBACK=1): X-User-Sub header names the caller.
    """
    if S.auth_dev_fallback:
        fallback_user = request.headers.get("x-user-sub")
        if fallback_user:
            return fallback_user

    if not (S.auth_jwks_url or S.auth_jwt_secret):
        raise HTTPException(401, "Authentication is not configured")

    token = extract_bearer_token(request.headers.get("authorization"))
    payload = _decode_token(token)
    user_sub = payload.get("sub")
    if not isinstance(user_sub, str) or not user_sub.strip():
        raise HTTPException(401, "Token missing subject")
    return user_sub


async def require_account(
    request: Request,
    user_sub: str = Depends(get_authenticated_user_sub),
    x_timezone: Optional[str] = Header(default=None, alias="X-Timezone"),
) -> Dict[str, str]:
    """Authenticated caller with a user row; the timezone header only counts on first sight."""
    user = ensure_user(user_sub, timezone_name=x_timezone)
    request.state.user_sub = user_sub
    return {"user_sub": user_sub, "timezone": user.get("timezone") or "UTC"}


async def require_cron(request: Request) -> None:
    """Scheduled callers: `Bearer <CRON_SECRET>` or the platform's trusted header."""
    auth = request.headers.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if S.cron_secret and scheme.lower() == "bearer" and constant_time_equals(token.strip(), S.cron_secret):
        return
    if S.cron_trusted_header and request.headers.get(S.cron_trusted_header):
        return
    raise HTTPException(401, "Unauthorized cron caller")
