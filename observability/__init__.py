"""Observability package for docwatch."""

from .logging import setup_logging, setup_logging_from_env, get_structured_logger
from .metrics import (
    docwatch_registry,
    set_app_info,
    record_page_fetch,
    record_ingestion_run,
    record_change_event,
    record_sanitized_lines,
    record_answer_decision,
    record_rerank,
    record_embedding_request,
    render_metrics
)

__all__ = [
    'setup_logging',
    'setup_logging_from_env',
    'get_structured_logger',
    'docwatch_registry',
    'set_app_info',
    'record_page_fetch',
    'record_ingestion_run',
    'record_change_event',
    'record_sanitized_lines',
    'record_answer_decision',
    'record_rerank',
    'record_embedding_request',
    'render_metrics'
]
