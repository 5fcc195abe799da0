"""Runtime settings for docwatch.

Each settings group reads ``DOCWATCH_*`` environment variables through its
``from_env`` constructor and falls back to the defaults declared on the model.
"""

import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _bool_env(name: str, fallback: bool) -> bool:
    raw = os.getenv(name)
    if not raw:
        return fallback
    return raw.lower() in ("1", "true", "yes", "on")


def _number_env(name: str, fallback: float) -> float:
    """Read a positive number from the environment, else return the fallback."""
    raw = os.getenv(name)
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value


class CrawlSettings(BaseModel):
    """Crawler and fetcher tuning."""
    timeout_ms: int = Field(default=10000, description="Per-attempt fetch timeout")
    max_pages: int = Field(default=20, description="Documents emitted per run")
    max_depth: int = Field(default=1, description="Link hops from the seed set")
    fetch_retries: int = Field(default=2, description="Retries after the first attempt")
    retry_backoff_ms: int = Field(default=500, description="Linear backoff step")
    max_chunk_chars: int = Field(default=1800, description="Upper bound on chunk size")
    min_text_chars: int = Field(default=120, description="Minimum sanitized text per document")
    user_agent: str = Field(default="docwatch-ingestion-worker", description="User agent prefix")

    @classmethod
    def from_env(cls) -> 'CrawlSettings':
        return cls(
            timeout_ms=int(_number_env('DOCWATCH_INGEST_TIMEOUT_MS', 10000)),
            max_pages=int(_number_env('DOCWATCH_MAX_INGEST_PAGES', 20)),
            max_depth=int(os.getenv('DOCWATCH_MAX_CRAWL_DEPTH', '1')),
            fetch_retries=int(os.getenv('DOCWATCH_FETCH_RETRIES', '2')),
            retry_backoff_ms=int(_number_env('DOCWATCH_RETRY_BACKOFF_MS', 500)),
            max_chunk_chars=int(_number_env('DOCWATCH_MAX_CHUNK_CHARS', 1800)),
            min_text_chars=int(_number_env('DOCWATCH_MIN_TEXT_CHARS', 120)),
            user_agent=os.getenv('DOCWATCH_USER_AGENT', 'docwatch-ingestion-worker'),
        )


class EmbeddingsProvider(str, Enum):
    """Supported embedding backends."""
    OPENAI = "openai"
    OLLAMA = "ollama"


DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"


class EmbeddingSettings(BaseModel):
    """Embedding provider configuration. Disabled unless explicitly enabled."""
    enabled: bool = False
    provider: EmbeddingsProvider = EmbeddingsProvider.OPENAI
    model: str = "text-embedding-3-small"
    base_url: str = DEFAULT_OPENAI_BASE_URL
    api_key: Optional[str] = None
    timeout_ms: int = 12000
    max_chars_per_input: int = 3500
    query_cache_size: int = 200

    @classmethod
    def from_env(cls) -> 'EmbeddingSettings':
        provider_raw = os.getenv('DOCWATCH_EMBEDDINGS_PROVIDER', 'openai').lower()
        provider = EmbeddingsProvider.OLLAMA if provider_raw == 'ollama' else EmbeddingsProvider.OPENAI
        is_ollama = provider == EmbeddingsProvider.OLLAMA

        return cls(
            enabled=_bool_env('DOCWATCH_EMBEDDINGS_ENABLED', False),
            provider=provider,
            model=os.getenv(
                'DOCWATCH_EMBEDDINGS_MODEL',
                'nomic-embed-text' if is_ollama else 'text-embedding-3-small'
            ),
            base_url=os.getenv(
                'DOCWATCH_EMBEDDINGS_BASE_URL',
                DEFAULT_OLLAMA_BASE_URL if is_ollama else DEFAULT_OPENAI_BASE_URL
            ),
            api_key=os.getenv('DOCWATCH_EMBEDDINGS_API_KEY'),
            timeout_ms=int(_number_env('DOCWATCH_EMBEDDINGS_TIMEOUT_MS', 12000)),
            max_chars_per_input=int(_number_env('DOCWATCH_EMBEDDINGS_MAX_CHARS', 3500)),
            query_cache_size=int(_number_env('DOCWATCH_QUERY_EMBEDDING_CACHE_SIZE', 200)),
        )


class AnswerSettings(BaseModel):
    """Answer decision thresholds."""
    stale_threshold_minutes: float = 24 * 60
    max_citations: int = 5
    conflict_margin: float = 0.15

    @classmethod
    def from_env(cls) -> 'AnswerSettings':
        return cls(
            stale_threshold_minutes=_number_env('DOCWATCH_ANSWER_STALE_THRESHOLD_MINUTES', 24 * 60),
            max_citations=int(_number_env('DOCWATCH_ANSWER_MAX_CITATIONS', 5)),
            conflict_margin=_number_env('DOCWATCH_ANSWER_CONFLICT_MARGIN', 0.15),
        )


class WorkerSettings(BaseModel):
    """Source-sync worker pool settings."""
    concurrency: int = 3
    max_attempts: int = 3
    backoff_seconds: float = 3.0
    job_retention: int = 500
    sources_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'WorkerSettings':
        return cls(
            concurrency=int(_number_env('DOCWATCH_WORKER_CONCURRENCY', 3)),
            max_attempts=int(_number_env('DOCWATCH_JOB_ATTEMPTS', 3)),
            backoff_seconds=_number_env('DOCWATCH_JOB_BACKOFF_SECONDS', 3.0),
            job_retention=int(_number_env('DOCWATCH_JOB_RETENTION', 500)),
            sources_dir=os.getenv('DOCWATCH_SOURCES_DIR'),
        )


class NotificationSettings(BaseModel):
    """Change-alert webhook settings."""
    webhook_url: Optional[str] = None
    min_severity: str = "medium"
    include_updated: bool = False
    max_events: int = 8
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> 'NotificationSettings':
        return cls(
            webhook_url=os.getenv('DOCWATCH_CHANGE_WEBHOOK_URL'),
            min_severity=os.getenv('DOCWATCH_CHANGE_MIN_SEVERITY', 'medium').lower(),
            include_updated=_bool_env('DOCWATCH_CHANGE_INCLUDE_UPDATED', False),
            max_events=max(1, int(_number_env('DOCWATCH_CHANGE_MAX_EVENTS', 8))),
        )


class Settings(BaseModel):
    """All runtime settings."""
    crawl: CrawlSettings = Field(default_factory=CrawlSettings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    answer: AnswerSettings = Field(default_factory=AnswerSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls) -> 'Settings':
        return cls(
            crawl=CrawlSettings.from_env(),
            embeddings=EmbeddingSettings.from_env(),
            answer=AnswerSettings.from_env(),
            worker=WorkerSettings.from_env(),
            notifications=NotificationSettings.from_env(),
        )
