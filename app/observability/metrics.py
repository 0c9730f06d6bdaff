"""
Prometheus metrics for the budget archive extraction service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Batches ──────────────────────────────────────────────────
batches_created_total = Counter(
    "batches_created_total",
    "Total extraction batches created",
    ["strategy"],
)

batch_transitions_total = Counter(
    "batch_transitions_total",
    "Batch status transitions",
    ["from_status", "to_status"],
)

batch_creation_duration_seconds = Histogram(
    "batch_creation_duration_seconds",
    "Time to run the full extraction pipeline for one batch",
    buckets=[0.5, 1, 5, 10, 30, 60, 120, 300],
)

stale_writes_total = Counter(
    "stale_writes_total",
    "Writes rejected because the concurrency token was stale",
    ["operation"],
)

# ── Pipeline Stages ──────────────────────────────────────────
pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Time per pipeline stage",
    ["stage"],
    buckets=[0.05, 0.1, 0.5, 1, 5, 10, 30, 60],
)

# ── Extraction ───────────────────────────────────────────────
tables_localized_total = Counter(
    "tables_localized_total",
    "Localized table candidates by outcome",
    ["table_key", "status"],
)

fields_extracted_total = Counter(
    "fields_extracted_total",
    "Fields extracted by strategy and confidence grade",
    ["engine_name", "confidence"],
)

extraction_failures_total = Counter(
    "extraction_failures_total",
    "Extractor failures by engine and error code",
    ["engine_name", "error_code"],
)

external_api_latency_seconds = Histogram(
    "external_api_latency_seconds",
    "Latency of external AI extraction calls",
    ["engine_name"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
)

# ── OCR ──────────────────────────────────────────────────────
ocr_runs_total = Counter(
    "ocr_runs_total",
    "Selective OCR invocations by final reason",
    ["reason"],
)

ocr_pages_total = Counter(
    "ocr_pages_total",
    "OCR pages processed by outcome",
    ["outcome"],
)

# ── Validation ───────────────────────────────────────────────
validation_issues_total = Counter(
    "validation_issues_total",
    "Validation issues emitted",
    ["rule_id", "level"],
)

# ── Aliases ──────────────────────────────────────────────────
alias_mappings = Gauge(
    "alias_mappings",
    "Alias mappings last observed by status",
    ["status"],
)
