from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlements.core.errors import EntitlementError
from entitlements.core.settings import S
from entitlements.metrics import metrics_endpoint, metrics_middleware, set_app_info
from entitlements.routers.characters import router as characters_router
from entitlements.routers.common import entitlement_error_handler
from entitlements.routers.cron import router as cron_router
from entitlements.routers.subscription import router as subscription_router
from entitlements.routers.usage import router as usage_router
from entitlements.routers.webhooks import router as webhooks_router


def configure_logging() -> None:
    logging.basicConfig(
        level=S.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Entitlements Service", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    if S.metrics_enabled:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(webhooks_router)
    app.include_router(subscription_router)
    app.include_router(characters_router)
    app.include_router(usage_router)
    app.include_router(cron_router)

    return app

app = create_app()
