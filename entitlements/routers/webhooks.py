from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from entitlements.core.errors import InvalidSignature, MalformedEvent, StoreUnavailable
from entitlements.metrics import record_webhook_rejection
from entitlements.webhooks.processor import process_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


async def _receive(provider: str, req: Request) -> Dict[str, Any]:
    body = await req.body()
    try:
        result = process_webhook(provider, body, req.headers)
    except InvalidSignature as exc:
        logger.warning("%s webhook rejected: %s", provider, exc.message)
        record_webhook_rejection(provider, exc.code)
        raise HTTPException(400, "Invalid signature") from exc
    except MalformedEvent as exc:
        logger.warning("%s webhook unreadable: %s", provider, exc.message)
        record_webhook_rejection(provider, exc.code)
        raise HTTPException(400, "Malformed payload") from exc
    except StoreUnavailable as exc:
        # 5xx makes the provider redeliver later.
        logger.exception("%s webhook failed on store", provider)
        raise HTTPException(500, "Webhook processing failed") from exc
    return result.to_dict()


@router.post("/api/stripe/webhook")
async def stripe_webhook(req: Request) -> Dict[str, Any]:
    return await _receive("stripe", req)


@router.post("/api/paddle/webhook")
async def paddle_webhook(req: Request) -> Dict[str, Any]:
    return await _receive("paddle", req)


@router.post("/api/fastspring/webhook")
async def fastspring_webhook(req: Request) -> Dict[str, Any]:
    return await _receive("fastspring", req)
