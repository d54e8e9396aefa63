"""Prometheus metrics for the product dedupe service."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("product_dedupe", "Product dedupe service application info")
app_info.info({"version": "0.1.0", "name": "product-dedupe"})

# Scan metrics
duplicate_scans_total = Counter(
    "duplicate_scans_total",
    "Total number of duplicate scans",
    ["trigger", "status"],
)

duplicate_scan_duration_seconds = Histogram(
    "duplicate_scan_duration_seconds",
    "Time spent scanning a tenant catalog for duplicates",
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 300.0, 900.0],
)

duplicate_candidates_found_total = Counter(
    "duplicate_candidates_found_total",
    "Total number of duplicate candidates persisted",
    ["confidence_band"],
)

# Review metrics
review_decisions_total = Counter(
    "review_decisions_total",
    "Total number of review decisions",
    ["action", "status"],
)

# Merge metrics
merges_total = Counter(
    "merges_total",
    "Total number of merge executions",
    ["merge_type", "status"],
)

merge_records_affected_total = Counter(
    "merge_records_affected_total",
    "Total number of sales records rewritten by merges",
)

# Alias metrics
alias_lookups_total = Counter(
    "alias_lookups_total",
    "Total number of alias lookups",
    ["result"],
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)

# Scan lock metrics
scan_lock_skipped_total = Counter(
    "scan_lock_skipped_total",
    "Scan triggers skipped because the tenant lock was held",
    ["trigger"],
)

scan_runs_recovered_total = Counter(
    "scan_runs_recovered_total",
    "Stale running scans marked failed by the watchdog",
)


def record_scan(trigger: str, status: str, duration: float, high_confidence: int, total: int):
    """Record a finished scan."""
    duplicate_scans_total.labels(trigger=trigger, status=status).inc()
    duplicate_scan_duration_seconds.observe(duration)
    if high_confidence:
        duplicate_candidates_found_total.labels(confidence_band="high").inc(high_confidence)
    if total > high_confidence:
        duplicate_candidates_found_total.labels(confidence_band="review").inc(total - high_confidence)


def record_decision(action: str, success: bool):
    """Record a review decision."""
    status = "success" if success else "error"
    review_decisions_total.labels(action=action, status=status).inc()


def record_merge(merge_type: str, status: str, records_affected: int = 0):
    """Record a merge execution."""
    merges_total.labels(merge_type=merge_type, status=status).inc()
    if records_affected:
        merge_records_affected_total.inc(records_affected)


def record_alias_lookup(hit: bool):
    """Record an alias lookup."""
    alias_lookups_total.labels(result="hit" if hit else "miss").inc()


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())


def record_scan_lock_skipped(trigger: str):
    """Record a scan skipped because another scan holds the tenant lock."""
    scan_lock_skipped_total.labels(trigger=trigger).inc()


def record_scan_run_recovered():
    """Record a stale scan run recovered by the watchdog."""
    scan_runs_recovered_total.inc()
