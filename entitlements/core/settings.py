from __future__ import annotations

import os
from dataclasses import dataclass


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False", "")


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    ddb_endpoint_url: str = os.environ.get("DDB_ENDPOINT_URL", "")

    # DynamoDB tables
    users_table_name: str = os.environ.get("USERS_TABLE_NAME", "users")
    users_subscription_index: str = os.environ.get("USERS_SUBSCRIPTION_INDEX", "subscription_id-index")
    characters_table_name: str = os.environ.get("CHARACTERS_TABLE_NAME", "characters")
    daily_usage_table_name: str = os.environ.get("DAILY_USAGE_TABLE_NAME", "daily_usage")
    pending_checkouts_table_name: str = os.environ.get("PENDING_CHECKOUTS_TABLE_NAME", "pending_checkouts")
    billing_table_name: str = os.environ.get("BILLING_TABLE_NAME", "billing")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")
    daily_usage_retention_days: int = int(os.environ.get("DAILY_USAGE_RETENTION_DAYS", "30"))
    processed_event_ttl_seconds: int = int(os.environ.get("PROCESSED_EVENT_TTL_SECONDS", str(7 * 24 * 3600)))

    # Logging / metrics
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")

    # Auth
    auth_jwt_secret: str = os.environ.get("AUTH_JWT_SECRET", "")
    auth_jwks_url: str = os.environ.get("AUTH_JWKS_URL", "")
    auth_audience: str = os.environ.get("AUTH_AUDIENCE", "")
    auth_issuer: str = os.environ.get("AUTH_ISSUER", "")
    auth_dev_fallback: bool = _flag("AUTH_DEV_FALLBACK", "0")

    # Cron
    cron_secret: str = os.environ.get("CRON_SECRET", "")
    cron_trusted_header: str = os.environ.get("CRON_TRUSTED_HEADER", "")  # e.g. x-vercel-cron

    # Entitlements
    free_character_slots: int = int(os.environ.get("FREE_CHARACTER_SLOTS", "1"))
    premium_character_slots: int = int(os.environ.get("PREMIUM_CHARACTER_SLOTS", "3"))

    # Checkout bridge
    pending_checkout_ttl_seconds: int = int(os.environ.get("PENDING_CHECKOUT_TTL_SECONDS", "300"))

    # Daily quotas
    quota_mode: str = os.environ.get("QUOTA_MODE", "shared").lower()  # shared|per_character
    free_daily_chapters: int = int(os.environ.get("FREE_DAILY_CHAPTERS", "5"))
    free_daily_scenes: int = int(os.environ.get("FREE_DAILY_SCENES", "0"))
    paid_daily_chapters: int = int(os.environ.get("PAID_DAILY_CHAPTERS", "30"))
    paid_daily_scenes: int = int(os.environ.get("PAID_DAILY_SCENES", "3"))
    paid_per_character_daily_chapters: int = int(os.environ.get("PAID_PER_CHARACTER_DAILY_CHAPTERS", "10"))
    paid_per_character_daily_scenes: int = int(os.environ.get("PAID_PER_CHARACTER_DAILY_SCENES", "1"))

    # Credits
    initial_credits: int = int(os.environ.get("INITIAL_CREDITS", "0"))
    chapter_credit_cost: int = int(os.environ.get("CHAPTER_CREDIT_COST", "15"))
    scene_credit_cost: int = int(os.environ.get("SCENE_CREDIT_COST", "80"))
    daily_recharge_amount: int = int(os.environ.get("DAILY_RECHARGE_AMOUNT", "10"))
    daily_recharge_cap: int = int(os.environ.get("DAILY_RECHARGE_CAP", "100"))
    low_credits_threshold: int = int(os.environ.get("LOW_CREDITS_THRESHOLD", "50"))
    starter_kit_credits: int = int(os.environ.get("STARTER_KIT_CREDITS", "1000"))

    # Sweeper
    sweep_batch_size: int = int(os.environ.get("SWEEP_BATCH_SIZE", "100"))

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance_seconds: int = int(os.environ.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))

    # Paddle
    paddle_webhook_secret: str = os.environ.get("PADDLE_WEBHOOK_SECRET", "")
    paddle_api_key: str = os.environ.get("PADDLE_API_KEY", "")
    paddle_base_url: str = os.environ.get("PADDLE_BASE_URL", "https://sandbox-api.paddle.com").rstrip("/")

    # FastSpring
    fastspring_webhook_secret: str = os.environ.get("FASTSPRING_WEBHOOK_SECRET", "")
    fastspring_api_username: str = os.environ.get("FASTSPRING_API_USERNAME", "")
    fastspring_api_password: str = os.environ.get("FASTSPRING_API_PASSWORD", "")
    fastspring_base_url: str = os.environ.get("FASTSPRING_BASE_URL", "https://api.fastspring.com").rstrip("/")

    provider_http_timeout_seconds: int = int(os.environ.get("PROVIDER_HTTP_TIMEOUT_SECONDS", "10"))


S = Settings()
