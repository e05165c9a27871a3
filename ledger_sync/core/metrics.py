"""
Prometheus metrics for the ledger sync service.

Metrics exposed:
- Provider request outcomes and latency
- Ingested bet records by outcome (inserted, duplicate, skipped reason)
- Balance reconciliations by scope and outcome
- Sync cycle duration and outcome
- Rate limiter queue depth
- Session state transitions
- Scheduler status gauge
"""
from prometheus_client import Counter, Gauge, Histogram

# Provider Metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total provider API requests",
    ["api_type", "operation", "outcome"]
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Provider API request latency in seconds (including retries)",
    ["api_type", "operation"]
)

provider_token_refresh_total = Counter(
    "provider_token_refresh_total",
    "Total provider token refreshes",
    ["api_type", "outcome"]
)

# Ingestion Metrics
bet_records_ingested_total = Counter(
    "bet_records_ingested_total",
    "Bet records seen by the sync engine, by outcome",
    ["api_type", "outcome"]
)

# Reconciliation Metrics
balance_reconciliations_total = Counter(
    "balance_reconciliations_total",
    "Balance reconciliation attempts",
    ["api_type", "scope", "outcome"]
)

# Cycle Metrics
sync_cycles_total = Counter(
    "sync_cycles_total",
    "Sync cycles by final status",
    ["api_type", "status"]
)

sync_cycle_duration_seconds = Histogram(
    "sync_cycle_duration_seconds",
    "Sync cycle duration in seconds",
    ["api_type"]
)

# Rate Limiter Metrics
rate_limiter_queue_length = Gauge(
    "rate_limiter_queue_length",
    "Tasks waiting in a provider rate limiter",
    ["api_type"]
)

# Session Metrics
session_transitions_total = Counter(
    "session_transitions_total",
    "Game session state transitions",
    ["from_state", "to_state"]
)

# Scheduler Metrics
scheduler_running = Gauge(
    "scheduler_running",
    "Whether the sync scheduler is running (1=running, 0=stopped)"
)

scheduler_jobs_total = Gauge(
    "scheduler_jobs_total",
    "Total number of scheduled jobs"
)

scheduler_ticks_skipped_total = Counter(
    "scheduler_ticks_skipped_total",
    "Ticks dropped because the previous run of the job was still in flight",
    ["job_id"]
)


def update_scheduler_metrics():
    """
    Update scheduler metrics.

    Call this periodically to update scheduler status.
    """
    from ledger_sync.core.scheduler import get_scheduler

    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        scheduler_running.set(1)
        scheduler_jobs_total.set(len(scheduler.jobs))
    else:
        scheduler_running.set(0)
        scheduler_jobs_total.set(0)


def record_provider_request(api_type: str, operation: str, outcome: str, duration_seconds: float):
    """Record one provider call (outcome: success, transport, rejection)."""
    provider_requests_total.labels(api_type=api_type, operation=operation, outcome=outcome).inc()
    provider_request_duration_seconds.labels(api_type=api_type, operation=operation).observe(duration_seconds)


def record_token_refresh(api_type: str, success: bool):
    """Record a token refresh attempt."""
    provider_token_refresh_total.labels(api_type=api_type, outcome="success" if success else "failure").inc()


def record_ingestion(api_type: str, outcome: str, count: int = 1):
    """Record ingested bet records (outcome: inserted, duplicate, or a skip reason)."""
    if count:
        bet_records_ingested_total.labels(api_type=api_type, outcome=outcome).inc(count)


def record_reconciliation(api_type: str, scope: str, outcome: str):
    """Record a balance reconciliation (scope: user, operator)."""
    balance_reconciliations_total.labels(api_type=api_type, scope=scope, outcome=outcome).inc()


def record_sync_cycle(api_type: str, status: str, duration_seconds: float):
    """Record a finished sync cycle."""
    sync_cycles_total.labels(api_type=api_type, status=status).inc()
    sync_cycle_duration_seconds.labels(api_type=api_type).observe(duration_seconds)


def record_session_transition(from_state: str, to_state: str):
    """Record a game session state change."""
    session_transitions_total.labels(from_state=from_state, to_state=to_state).inc()
