"""Prometheus metric definitions for WalletPass.

Single source of truth for all custom metrics. Import from here in API and Celery code.
"""

from prometheus_client import Counter, Histogram

# --- Celery task metrics ---

celery_task_total = Counter(
    "walletpass_celery_task_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)

celery_task_duration_seconds = Histogram(
    "walletpass_celery_task_duration_seconds",
    "Celery task execution duration in seconds",
    ["task_name"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# --- Device web service ---

registrations_total = Counter(
    "walletpass_registrations_total",
    "Device registration calls by result",
    ["result"],
)

unregistrations_total = Counter(
    "walletpass_unregistrations_total",
    "Device unregistration calls",
)

# --- Updates and push ---

pass_updates_total = Counter(
    "walletpass_pass_updates_total",
    "Pass content changes processed by the orchestrator",
)

push_deliveries_total = Counter(
    "walletpass_push_deliveries_total",
    "Push delivery attempts by outcome",
    ["outcome"],
)

push_delivery_duration_seconds = Histogram(
    "walletpass_push_delivery_duration_seconds",
    "APNs request duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

dead_token_cleanups_total = Counter(
    "walletpass_dead_token_cleanups_total",
    "Registrations removed after the gateway reported a dead push token",
)

provider_tokens_signed_total = Counter(
    "walletpass_provider_tokens_signed_total",
    "APNs provider tokens signed",
)
