"""Prometheus metrics for docwatch ingestion and retrieval."""

import logging
from typing import Any, Dict, Optional

from prometheus_client import Counter, Histogram, Info, generate_latest, CONTENT_TYPE_LATEST
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Dedicated registry so tests and embedders don't collide with the default one
docwatch_registry = CollectorRegistry()

pages_fetched = Counter(
    'docwatch_pages_fetched_total',
    'Pages fetched by the crawler',
    ['source', 'outcome'],
    registry=docwatch_registry
)

ingestion_runs = Counter(
    'docwatch_ingestion_runs_total',
    'Completed ingestion runs',
    ['source', 'status'],
    registry=docwatch_registry
)

ingestion_duration = Histogram(
    'docwatch_ingestion_duration_seconds',
    'Wall time of an ingestion run',
    ['source'],
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0],
    registry=docwatch_registry
)

change_events = Counter(
    'docwatch_change_events_total',
    'Change events emitted',
    ['source', 'event_type', 'severity'],
    registry=docwatch_registry
)

sanitized_lines = Counter(
    'docwatch_sanitized_lines_total',
    'Lines redacted by the prompt-injection sanitizer',
    ['source'],
    registry=docwatch_registry
)

answer_decisions = Counter(
    'docwatch_answer_decisions_total',
    'Answer decisions by status',
    ['status'],
    registry=docwatch_registry
)

rerank_duration = Histogram(
    'docwatch_rerank_duration_seconds',
    'Hybrid rerank duration in seconds',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
    registry=docwatch_registry
)

embedding_requests = Counter(
    'docwatch_embedding_requests_total',
    'Embedding provider calls',
    ['provider', 'status'],
    registry=docwatch_registry
)

app_info = Info(
    'docwatch_app',
    'docwatch build information',
    registry=docwatch_registry
)


def set_app_info(version: str, environment: str = "development") -> None:
    app_info.info({'version': version, 'environment': environment})


def record_page_fetch(source: str, outcome: str) -> None:
    """Outcome is one of ``ok``, ``not_modified`` or ``failed``."""
    pages_fetched.labels(source=source, outcome=outcome).inc()


def record_ingestion_run(source: str, status: str, duration: Optional[float] = None) -> None:
    ingestion_runs.labels(source=source, status=status).inc()
    if duration is not None:
        ingestion_duration.labels(source=source).observe(duration)


def record_change_event(source: str, event_type: str, severity: str) -> None:
    change_events.labels(source=source, event_type=event_type, severity=severity).inc()


def record_sanitized_lines(source: str, count: int) -> None:
    if count > 0:
        sanitized_lines.labels(source=source).inc(count)


def record_answer_decision(status: str) -> None:
    answer_decisions.labels(status=status).inc()


def record_rerank(duration: float) -> None:
    rerank_duration.observe(duration)


def record_embedding_request(provider: str, error: Optional[str] = None) -> None:
    embedding_requests.labels(provider=provider, status="error" if error else "success").inc()


def render_metrics() -> Dict[str, Any]:
    """Prometheus exposition payload for an external HTTP layer."""
    return {
        "content_type": CONTENT_TYPE_LATEST,
        "body": generate_latest(docwatch_registry),
    }
