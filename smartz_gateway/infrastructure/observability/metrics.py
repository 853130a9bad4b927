"""Prometheus metrics for monitoring purchases, refunds, payment credits and provider performance"""

from prometheus_client import Counter, Histogram

# Purchase metrics
purchase_counter = Counter(
    "smartz_purchase_total",
    "Number purchase attempts by outcome",
    ["outcome"],  # acquired | declined | acquisition_failed | provider_unavailable
)

refund_counter = Counter(
    "smartz_refund_total",
    "Compensating refunds after failed acquisitions",
    ["result"],  # applied | already_applied | failed
)

coins_spent_counter = Counter(
    "smartz_coins_spent_total",
    "Coins debited for numbers that were delivered",
)

# Payment metrics
payment_credit_counter = Counter(
    "smartz_payment_credit_total",
    "Payment credit attempts by outcome",
    ["outcome"],  # credited | duplicate | rejected
)

coins_credited_counter = Counter(
    "smartz_coins_credited_total",
    "Coins credited from verified payments",
)

# Store metrics
ledger_conflict_counter = Counter(
    "smartz_ledger_conflicts_total",
    "Transient store failures, retried or surfaced as conflicts",
    ["operation"],
)

# External API metrics
provider_latency_histogram = Histogram(
    "provider_call_latency_seconds",
    "SMS provider and payment gateway response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

provider_failure_counter = Counter(
    "provider_failures_total",
    "Failed SMS provider and payment gateway calls",
    ["operation"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_purchase(outcome: str, coins: int = 0) -> None:
    """Record purchase outcome; only acquired numbers count as spend"""
    purchase_counter.labels(outcome=outcome).inc()
    if outcome == "acquired" and coins > 0:
        coins_spent_counter.inc(coins)


def record_payment(outcome: str, coins: int = 0) -> None:
    """Record payment credit outcome and credited volume"""
    payment_credit_counter.labels(outcome=outcome).inc()
    if outcome == "credited" and coins > 0:
        coins_credited_counter.inc(coins)
