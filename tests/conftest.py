"""Shared fixtures for the docwatch test suite."""

from datetime import datetime, timezone
from typing import Dict, Optional

import pytest

from config.database import DatabaseConfig, DatabaseFactory
from pipelines.fetcher import FetchError, FetchResult
from pipelines.policy import CrawlPolicy
from services.shared.models import Chunk, Document, Source
from sources.loader import SourceConfig


@pytest.fixture
def db_factory():
    """In-memory SQLite database with the full schema."""
    factory = DatabaseFactory()
    factory.initialize(DatabaseConfig(url="sqlite://"))
    yield factory
    factory.close()


@pytest.fixture
def db_session(db_factory):
    session = db_factory.session_factory()()
    yield session
    session.close()


@pytest.fixture
def source_row(db_session):
    source = Source(id="example", name="Example Docs", kind="docs",
                    base_url="https://docs.example.com", trust_score=0.9)
    db_session.add(source)
    db_session.commit()
    return source


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_source_config(**overrides) -> SourceConfig:
    data = {
        "id": "example",
        "name": "Example Docs",
        "base_url": "https://docs.example.com",
        "kind": "docs",
        "trust_score": 0.9,
        "poll_interval_minutes": 60,
        "policy": CrawlPolicy(min_text_chars=20, max_pages=10, max_depth=1),
    }
    data.update(overrides)
    return SourceConfig(**data)


def page(title: str, body: str) -> str:
    return f"<html><head><title>{title}</title></head><body><main>{body}</main></body></html>"


def add_document(db, source_id, url, title, texts, changed_at, version="latest", language="en"):
    """Insert a document with one chunk per text."""
    document = Document(source_id=source_id, canonical_url=url, version_tag=version, title=title,
                        language=language, content_hash=url, first_seen_at=changed_at,
                        last_seen_at=changed_at, last_changed_at=changed_at)
    document.chunks = [Chunk(chunk_index=i, text=text, token_count=1, valid_from=changed_at)
                       for i, text in enumerate(texts)]
    db.add(document)
    db.commit()
    return document


class FakeSite:
    """Serves canned HTML keyed by URL to a crawler's ``fetch`` override."""

    def __init__(self, pages: Dict[str, str], etags: Optional[Dict[str, str]] = None):
        self.pages = dict(pages)
        self.etags = etags or {}
        self.requests = []

    async def __call__(self, url, conditions=None):
        self.requests.append((url, conditions))
        if url not in self.pages:
            raise FetchError(f"HTTP 404 for {url}", status=404)
        etag = self.etags.get(url)
        if etag and conditions and conditions.get("etag") == etag:
            return FetchResult(url=url, status=304, text="", etag=etag, not_modified=True)
        return FetchResult(url=url, status=200, text=self.pages[url], etag=etag)


@pytest.fixture
def source_config():
    return make_source_config()
