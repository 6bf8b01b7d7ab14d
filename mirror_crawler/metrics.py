"""Prometheus metrics for the crawler."""

from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

crawler_info = Info("mirror_crawler", "Marketplace mirror crawler info")
crawler_info.info({"version": "0.1.0", "name": "mirror-crawler"})

# Item metrics
items_processed_total = Counter(
    "items_processed_total",
    "Items processed by the enrichment orchestrator",
    ["mode", "status"],
)

item_substep_failures_total = Counter(
    "item_substep_failures_total",
    "Failed item sub-steps (reviews, description, shipping)",
    ["step"],
)

shipping_writes_total = Counter(
    "shipping_writes_total",
    "Per-market shipping record writes",
    ["market", "status"],
)

# Seller metrics
sellers_processed_total = Counter(
    "sellers_processed_total",
    "Seller tasks completed",
    ["status"],
)

seller_fetch_attempts_total = Counter(
    "seller_fetch_attempts_total",
    "Seller page fetch attempts per escalation tier",
    ["tier", "outcome"],
)

seller_reviews_fetch_total = Counter(
    "seller_reviews_fetch_total",
    "Seller review fetches by mode (peek or paged)",
    ["mode"],
)

# Session metrics
login_attempts_total = Counter(
    "login_attempts_total",
    "Login attempts",
    ["outcome"],
)

# Runs
crawl_run_duration_seconds = Histogram(
    "crawl_run_duration_seconds",
    "Duration of a crawl stage run",
    ["stage"],
    buckets=[10, 30, 60, 300, 900, 1800, 3600, 7200],
)

pool_in_flight = Gauge(
    "pool_in_flight",
    "Tasks currently running in a task pool",
    ["pool"],
)


def record_item(mode: str, status: str):
    items_processed_total.labels(mode=mode, status=status).inc()


def record_item_failure(step: str):
    item_substep_failures_total.labels(step=step).inc()


def record_shipping_write(market: str, ok: bool):
    shipping_writes_total.labels(market=market, status="ok" if ok else "error").inc()


def record_seller(status: str):
    sellers_processed_total.labels(status=status).inc()


def record_seller_fetch(tier: str, outcome: str):
    seller_fetch_attempts_total.labels(tier=tier, outcome=outcome).inc()


def record_seller_reviews(mode: str):
    seller_reviews_fetch_total.labels(mode=mode).inc()


def record_login(outcome: str):
    login_attempts_total.labels(outcome=outcome).inc()


def record_run_duration(stage: str, seconds: float):
    crawl_run_duration_seconds.labels(stage=stage).observe(seconds)


def start_metrics_server(port: int):
    """Expose /metrics on the given port (no-op when port is 0)."""
    if port > 0:
        start_http_server(port)
