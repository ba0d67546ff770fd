"""Prometheus metrics for the Pooled Reason API.

Application-level metrics exposed via the /metrics endpoint:
- Request counters and latency histograms
- LLM API call counters
- Analysis fallback and step pool counters
- Cache hit/miss counters
"""

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Custom registry to avoid conflicts with the default registry
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    "pooled_reason_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

REQUEST_DURATION = Histogram(
    "pooled_reason_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

# LLM API metrics
LLM_REQUESTS_TOTAL = Counter(
    "pooled_reason_llm_requests_total",
    "Total LLM API requests",
    ["model", "status"],
    registry=REGISTRY,
)

LLM_REQUEST_DURATION = Histogram(
    "pooled_reason_llm_request_duration_seconds",
    "LLM API request latency in seconds",
    ["model"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
    registry=REGISTRY,
)

LLM_TOKENS_TOTAL = Counter(
    "pooled_reason_llm_tokens_total",
    "Total tokens processed by LLM",
    ["model", "type"],  # type: prompt, completion
    registry=REGISTRY,
)

RATE_LIMIT_WAITS = Counter(
    "pooled_reason_rate_limit_waits_total",
    "Times a caller had to wait for the LLM rate limit window",
    registry=REGISTRY,
)

# Analysis metrics
ANALYSIS_FALLBACKS = Counter(
    "pooled_reason_analysis_fallbacks_total",
    "Fragments analyzed by the keyword fallback instead of the LLM",
    ["path", "reason"],  # path: batch, mega_batch; reason: llm_error, parse_error, missing, flush_error
    registry=REGISTRY,
)

FRAGMENTS_ANALYZED = Counter(
    "pooled_reason_fragments_analyzed_total",
    "Fragments analyzed",
    ["path"],
    registry=REGISTRY,
)

# Step pool metrics
STEP_POOL_FLUSHES = Counter(
    "pooled_reason_step_pool_flushes_total",
    "Step pool flushes",
    ["trigger"],  # trigger: timer, session_cap, manual, shutdown
    registry=REGISTRY,
)

STEP_POOL_FRAGMENTS = Counter(
    "pooled_reason_step_pool_fragments_total",
    "Fragments enqueued into step pools",
    registry=REGISTRY,
)

STEP_POOL_PENDING = Gauge(
    "pooled_reason_step_pool_pending_steps",
    "Step pools currently collecting fragments",
    registry=REGISTRY,
)

RELATIONSHIPS_FOUND = Counter(
    "pooled_reason_relationships_found_total",
    "Relationships discovered between fragments",
    ["scope"],  # scope: pooled, session
    registry=REGISTRY,
)

# Cache metrics
CACHE_HITS = Counter(
    "pooled_reason_cache_hits_total",
    "Total cache hits",
    ["cache_type"],
    registry=REGISTRY,
)

CACHE_MISSES = Counter(
    "pooled_reason_cache_misses_total",
    "Total cache misses",
    ["cache_type"],
    registry=REGISTRY,
)

APP_INFO = Gauge(
    "pooled_reason_app_info",
    "Application information",
    ["version", "environment"],
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def set_app_info(version: str, environment: str):
    """Set application info gauge."""
    APP_INFO.labels(version=version, environment=environment).set(1)
