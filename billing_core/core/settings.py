from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")


def _csv(name: str, default: str) -> Tuple[str, ...]:
    raw = os.environ.get(name, default)
    return tuple(p.strip() for p in raw.split(",") if p.strip())


def _int_csv(name: str, default: str) -> Tuple[int, ...]:
    return tuple(int(p) for p in _csv(name, default))


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")
    ddb_endpoint_url: str = os.environ.get("DDB_ENDPOINT_URL", "")

    # Store timeouts; a timeout surfaces as a transient failure, never an internal retry loop
    ddb_connect_timeout_seconds: float = float(os.environ.get("DDB_CONNECT_TIMEOUT_SECONDS", "2"))
    ddb_read_timeout_seconds: float = float(os.environ.get("DDB_READ_TIMEOUT_SECONDS", "5"))
    ddb_max_attempts: int = int(os.environ.get("DDB_MAX_ATTEMPTS", "2"))

    # DynamoDB tables
    subscriptions_table_name: str = os.environ.get("SUBSCRIPTIONS_TABLE_NAME", "subscriptions")
    subscriptions_user_index: str = os.environ.get("SUBSCRIPTIONS_USER_INDEX", "user_id-index")
    subscriptions_status_index: str = os.environ.get("SUBSCRIPTIONS_STATUS_INDEX", "status-index")
    entitlements_table_name: str = os.environ.get("ENTITLEMENTS_TABLE_NAME", "entitlements")
    ledger_table_name: str = os.environ.get("LEDGER_TABLE_NAME", "ledger")
    ledger_user_index: str = os.environ.get("LEDGER_USER_INDEX", "user_id-index")
    webhooks_table_name: str = os.environ.get("WEBHOOKS_TABLE_NAME", "webhooks")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")

    # Lifecycle
    grace_days: int = int(os.environ.get("GRACE_DAYS", "7"))
    billing_cycle_days: int = int(os.environ.get("BILLING_CYCLE_DAYS", "30"))
    dunning_schedule_days: Tuple[int, ...] = _int_csv("DUNNING_SCHEDULE_DAYS", "0,3,7")
    occ_max_retries: int = int(os.environ.get("OCC_MAX_RETRIES", "3"))

    # Event dedup
    dedup_lease_seconds: int = int(os.environ.get("DEDUP_LEASE_SECONDS", "300"))
    dedup_ttl_days: int = int(os.environ.get("DEDUP_TTL_DAYS", "0"))

    # Reconciliation
    reconcile_providers: Tuple[str, ...] = _csv("RECONCILE_PROVIDERS", "stripe,iap,wise,tazapay")
    reconcile_tolerance: Decimal = Decimal(os.environ.get("RECONCILE_TOLERANCE", "0.01"))
    reconcile_window_days: int = int(os.environ.get("RECONCILE_WINDOW_DAYS", "1"))
    external_totals_json: str = os.environ.get("EXTERNAL_TOTALS_JSON", "")

    default_currency: str = os.environ.get("DEFAULT_CURRENCY", "USD").upper()

    # Entitlement templates (JSON: {"provider": {"feature": true}, "provider:platform": {...}})
    entitlement_templates: str = os.environ.get("ENTITLEMENT_TEMPLATES", "")

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")

    # Dunning notifications
    dunning_sns_topic_arn: str = os.environ.get("DUNNING_SNS_TOPIC_ARN", "")
    public_base_url: str = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

    # Operator endpoints
    admin_api_token: str = os.environ.get("ADMIN_API_TOKEN", "")

    audit_log_enabled: bool = _flag("AUDIT_LOG_ENABLED", "1")
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")


S = Settings()
