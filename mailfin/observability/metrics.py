"""
Prometheus metrics for extraction runs, QA review and synthesis.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Runs ─────────────────────────────────────────────────────
runs_started_total = Counter(
    "mailfin_runs_started_total",
    "Extraction runs started",
    ["mode"],  # new | resume
)

runs_finished_total = Counter(
    "mailfin_runs_finished_total",
    "Extraction runs that reached a terminal status",
    ["status"],
)

run_duration_seconds = Histogram(
    "mailfin_run_duration_seconds",
    "Wall time of one run execution",
    buckets=[1, 5, 15, 30, 60, 300, 900, 1800, 3600],
)

duplicate_runs_rejected_total = Counter(
    "mailfin_duplicate_runs_rejected_total",
    "Run creations rejected as duplicates",
)

# ── Emails ───────────────────────────────────────────────────
emails_extracted_total = Counter(
    "mailfin_emails_extracted_total",
    "Emails processed by outcome",
    ["outcome"],  # completed | informational | failed
)

invoker_latency_seconds = Histogram(
    "mailfin_invoker_latency_seconds",
    "Latency of extraction calls",
    ["model_id"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)

invoker_failures_total = Counter(
    "mailfin_invoker_failures_total",
    "Failed extraction calls",
    ["error_type"],
)

# ── Transactions ─────────────────────────────────────────────
transactions_materialized_total = Counter(
    "mailfin_transactions_materialized_total",
    "Transactions written by the materializer",
    ["type"],
)

transaction_items_failed_total = Counter(
    "mailfin_transaction_items_failed_total",
    "Transaction items that failed to materialize",
)

# ── QA & Synthesis ───────────────────────────────────────────
qa_results_total = Counter(
    "mailfin_qa_results_total",
    "QA checks recorded",
    ["has_issues"],
)

synthesized_runs_total = Counter(
    "mailfin_synthesized_runs_total",
    "Runs produced by synthesis",
    ["synthesis_type"],
)

# ── Worker ───────────────────────────────────────────────────
active_jobs = Gauge(
    "mailfin_active_jobs",
    "Run executions currently in progress in this process",
)

worker_queue_depth = Gauge(
    "mailfin_worker_queue_depth",
    "Number of jobs waiting in queue",
)
