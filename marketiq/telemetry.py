"""Prometheus metrics helpers for the analysis pipeline."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


PROVIDER_ATTEMPTS = Counter(
    "provider_attempts_total",
    "Provider attempts made by fallback chains, by outcome.",
    labelnames=("phase", "provider", "outcome"),
)

PROVIDER_LATENCY_MS = Histogram(
    "provider_latency_ms",
    "Latency of upstream market data/model/chart requests in milliseconds.",
    labelnames=("provider", "operation"),
    buckets=(10, 25, 50, 100, 200, 400, 800, 1600, 3200, 6400, 12800),
)

CHAIN_EXHAUSTED = Counter(
    "provider_chain_exhausted_total",
    "Fallback chains that ended without an accepted result.",
    labelnames=("phase",),
)

CACHE_LOOKUPS = Counter(
    "cache_lookups_total",
    "Response cache lookups by namespace and result.",
    labelnames=("namespace", "result"),
)

VALIDATION_OUTCOMES = Counter(
    "zone_validation_outcomes_total",
    "Structured zone extraction outcomes (schema, repair, heuristic, none).",
    labelnames=("source",),
)

REPAIR_PASSES = Counter(
    "zone_repair_passes_total",
    "Repair passes issued after an invalid structured block.",
    labelnames=("result",),
)

QUOTA_DENIALS = Counter(
    "quota_denials_total",
    "Requests denied by the admission controller.",
    labelnames=("period",),
)

CHART_RENDER_FAILURES = Counter(
    "chart_render_failures_total",
    "Chart service calls that failed (analysis still returned).",
)

ANALYSIS_DURATION_MS = Histogram(
    "analysis_duration_ms",
    "End-to-end analysis latency in milliseconds.",
    labelnames=("outcome",),
    buckets=(100, 250, 500, 1000, 2000, 4000, 8000, 16000, 32000),
)


def record_provider_attempt(phase: str, provider: str, outcome: str, duration_ms: float) -> None:
    PROVIDER_ATTEMPTS.labels(phase or "unknown", provider or "unknown", outcome or "unknown").inc()
    PROVIDER_LATENCY_MS.labels(provider or "unknown", phase or "unknown").observe(max(0.0, float(duration_ms)))


def record_chain_exhausted(phase: str) -> None:
    CHAIN_EXHAUSTED.labels(phase or "unknown").inc()


def record_cache_lookup(namespace: str, hit: bool) -> None:
    CACHE_LOOKUPS.labels(namespace or "default", "hit" if hit else "miss").inc()


def record_validation_outcome(source: str) -> None:
    VALIDATION_OUTCOMES.labels(source or "none").inc()


def record_repair_pass(succeeded: bool) -> None:
    REPAIR_PASSES.labels("ok" if succeeded else "failed").inc()


def record_quota_denial(period: str) -> None:
    QUOTA_DENIALS.labels(period or "unknown").inc()


def record_chart_failure() -> None:
    CHART_RENDER_FAILURES.inc()


def record_analysis_duration(outcome: str, duration_ms: float) -> None:
    ANALYSIS_DURATION_MS.labels(outcome or "unknown").observe(max(0.0, float(duration_ms)))


def prometheus_response() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = [
    "ANALYSIS_DURATION_MS",
    "CACHE_LOOKUPS",
    "CHAIN_EXHAUSTED",
    "CHART_RENDER_FAILURES",
    "PROVIDER_ATTEMPTS",
    "PROVIDER_LATENCY_MS",
    "QUOTA_DENIALS",
    "REPAIR_PASSES",
    "VALIDATION_OUTCOMES",
    "prometheus_response",
    "record_analysis_duration",
    "record_cache_lookup",
    "record_chain_exhausted",
    "record_chart_failure",
    "record_provider_attempt",
    "record_quota_denial",
    "record_repair_pass",
    "record_validation_outcome",
]
