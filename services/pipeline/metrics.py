"""Prometheus metrics for the invoice pipeline.

Exposes key metrics for monitoring:
- Extraction attempts by tier and outcome
- Cloud parse latency by tier
- Credits charged
- Decisions, anomalies and blacklist lookups

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram

# Extraction metrics
extraction_attempts_total = Counter(
    "invoice_extraction_attempts_total",
    "Total extraction attempts",
    ["tier", "status"],  # success, failed, malformed
)

cloud_parse_duration_seconds = Histogram(
    "invoice_cloud_parse_duration_seconds",
    "Cloud parse call duration in seconds, retries included",
    ["tier"],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Cost metrics
credits_charged_total = Counter(
    "invoice_credits_charged_total",
    "Total prepaid credits debited for cloud extraction",
)

credit_debits_total = Counter(
    "invoice_credit_debits_total",
    "Total credit debit requests",
    ["status"],  # success, insufficient
)

# Outcome metrics
decisions_total = Counter(
    "invoice_decisions_total",
    "Total approval decisions",
    ["status"],
)

anomalies_total = Counter(
    "invoice_anomalies_total",
    "Total anomaly findings",
    ["kind"],
)

blacklist_lookups_total = Counter(
    "invoice_blacklist_lookups_total",
    "Total blacklist lookups",
    ["status"],  # NONE, EFOS, EDOS, UNKNOWN
)
