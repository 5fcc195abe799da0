"""Web crawler pipeline for docwatch.

Breadth-first, single-host crawl of one documentation source. Each fetched
page is extracted, screened for prompt injection and chunked; the run is
summarized in an ``IngestRunResult`` for the persister.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, TYPE_CHECKING

import aiohttp

from config.settings import CrawlSettings
from observability.metrics import record_page_fetch, record_sanitized_lines
from .chunker import DocumentChunk, DocumentChunker
from .extractor import (
    extract_links,
    extract_main_html,
    extract_sitemap_urls,
    extract_title,
    html_to_text,
    strip_html_noise,
    strip_noise_lines,
)
from .fetcher import FetchError, FetchMetadata, FetchResult, fetch_with_retry
from .policy import CrawlPolicy, canonicalize_url, is_allowed_url
from .security import sanitize_prompt_injection_lines

if TYPE_CHECKING:
    from sources.loader import SourceConfig

logger = logging.getLogger(__name__)

# (url, conditions) -> FetchResult; conditions carry stored etag/last_modified
FetchCallable = Callable[[str, Optional[Dict[str, Optional[str]]]], Awaitable[FetchResult]]

FETCH_ERRORS = (FetchError, aiohttp.ClientError, asyncio.TimeoutError)


class RunStatus(str, Enum):
    """Ingestion run status."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class IngestedDocument:
    """A page that was fetched, extracted and chunked."""
    canonical_url: str
    title: str
    content: str
    chunks: List[DocumentChunk]
    fetch: FetchMetadata
    language: str = "en"
    version_tag: str = "latest"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "canonical_url": self.canonical_url,
            "title": self.title,
            "language": self.language,
            "version_tag": self.version_tag,
            "content": self.content,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "fetch": self.fetch.to_dict(),
        }


@dataclass
class NotModifiedDocument:
    """A page the server reported as unchanged (HTTP 304)."""
    canonical_url: str
    fetch: FetchMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {"canonical_url": self.canonical_url, "fetch": self.fetch.to_dict()}


@dataclass
class IngestRunResult:
    """Result of crawling one source."""
    source: str
    status: RunStatus = RunStatus.SUCCESS
    documents: List[IngestedDocument] = field(default_factory=list)
    not_modified_documents: List[NotModifiedDocument] = field(default_factory=list)
    fetched_urls: List[str] = field(default_factory=list)
    failed_urls: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def mark_partial(self) -> None:
        if self.status == RunStatus.SUCCESS:
            self.status = RunStatus.PARTIAL

    def finalize(self) -> None:
        """Settle the final status once the crawl loop is done."""
        if self.documents:
            if self.errors:
                self.mark_partial()
            return
        # No new documents, even if every page answered 304
        self.status = RunStatus.FAILED if self.errors else RunStatus.PARTIAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "status": self.status.value,
            "documents": [doc.to_dict() for doc in self.documents],
            "not_modified_documents": [doc.to_dict() for doc in self.not_modified_documents],
            "fetched_urls": list(self.fetched_urls),
            "failed_urls": list(self.failed_urls),
            "errors": list(self.errors),
        }


def get_seed_urls(source: 'SourceConfig') -> List[str]:
    """Explicit seeds, else the base URL; canonical and de-duplicated."""
    seeds = source.seed_urls or [source.base_url]
    urls: List[str] = []
    for url in seeds:
        canonical = canonicalize_url(url)
        if canonical not in urls:
            urls.append(canonical)
    return urls


class WebCrawler:
    """Asynchronous single-source crawler.

    Fetches are sequential within one crawl. Use as an async context manager
    so the HTTP session is opened and closed with the crawler.
    """

    def __init__(self,
                 settings: Optional[CrawlSettings] = None,
                 fetch: Optional[FetchCallable] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        """Initialize crawler.

        Args:
            settings: Crawl tuning; defaults to ``CrawlSettings()``
            fetch: Optional replacement for the HTTP fetch, used by tests and
                alternative transports
            session: Optional pre-built aiohttp session (not closed by the crawler)
        """
        self.settings = settings or CrawlSettings()
        self._fetch_override = fetch
        self.session = session
        self._owns_session = False

    async def __aenter__(self):
        """Async context manager entry."""
        if self._fetch_override is None and self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the crawler session if the crawler opened it."""
        if self._owns_session and self.session:
            await self.session.close()
        if self._owns_session:
            self.session = None
            self._owns_session = False

    async def fetch(self, url: str, user_agent: str,
                    conditions: Optional[Dict[str, Optional[str]]] = None) -> FetchResult:
        if self._fetch_override is not None:
            return await self._fetch_override(url, conditions)
        if self.session is None:
            raise RuntimeError("Crawler session not started; use 'async with WebCrawler(...)'")
        return await fetch_with_retry(
            self.session,
            url,
            timeout_ms=self.settings.timeout_ms,
            retries=self.settings.fetch_retries,
            backoff_ms=self.settings.retry_backoff_ms,
            user_agent=user_agent,
            conditions=conditions,
        )

    def _process_page(self, html: str, url: str, policy: CrawlPolicy,
                      result: IngestRunResult) -> Tuple[str, str, str]:
        """Extract and sanitize a page. Returns (title, main_html, sanitized_text)."""
        title = extract_title(html, url)
        main_html = extract_main_html(html)
        noise_reduced = strip_html_noise(main_html, policy.html_noise_patterns)
        text = strip_noise_lines(html_to_text(noise_reduced), policy.line_noise_patterns)
        sanitized = sanitize_prompt_injection_lines(text)

        if sanitized.removed_lines > 0:
            result.errors.append(
                f"{url}: sanitized {sanitized.removed_lines} suspicious line(s) "
                f"[{', '.join(sanitized.findings)}]"
            )
            result.mark_partial()
            record_sanitized_lines(result.source, sanitized.removed_lines)
            logger.warning(f"Sanitized {sanitized.removed_lines} line(s) on {url}: {sanitized.findings}")

        return title, main_html, sanitized.text

    async def crawl_source(self,
                           source: 'SourceConfig',
                           conditional_headers: Optional[Dict[str, Dict[str, Optional[str]]]] = None
                           ) -> IngestRunResult:
        """Crawl one source.

        Args:
            source: Source definition with base URL, seeds, sitemap and policy
            conditional_headers: Stored etag/last_modified keyed by canonical URL

        Returns:
            IngestRunResult summarizing documents, 304s, failures and errors
        """
        policy = source.policy
        conditional_headers = conditional_headers or {}
        max_pages = policy.max_pages or self.settings.max_pages
        max_depth = policy.max_depth if policy.max_depth is not None else self.settings.max_depth
        min_text_chars = policy.min_text_chars if policy.min_text_chars is not None else self.settings.min_text_chars
        user_agent = f"{self.settings.user_agent}/{source.id}"
        chunker = DocumentChunker(max_chars=self.settings.max_chunk_chars)

        result = IngestRunResult(source=source.id)
        urls = get_seed_urls(source)

        if source.sitemap_url:
            try:
                sitemap = await self.fetch(source.sitemap_url, user_agent)
                for url in extract_sitemap_urls(sitemap.text, source.base_url, policy):
                    if url not in urls:
                        urls.append(url)
            except FETCH_ERRORS as e:
                logger.warning(f"Sitemap fetch failed for {source.id}: {e}")
                result.errors.append(f"sitemap: {e}")
                result.mark_partial()

        queue: Deque[Tuple[str, int]] = deque(
            (url, 0) for url in urls if is_allowed_url(url, source.base_url, policy)
        )
        seen = set()

        logger.info(f"Starting crawl of {source.id}: {len(queue)} seed URL(s), "
                    f"max_pages={max_pages}, max_depth={max_depth}")

        while queue and len(result.documents) < max_pages:
            next_url, depth = queue.popleft()
            url = canonicalize_url(next_url)
            if url in seen:
                continue
            seen.add(url)

            try:
                response = await self.fetch(url, user_agent, conditional_headers.get(url))
            except FETCH_ERRORS as e:
                logger.warning(f"Failed to fetch {url}: {e}")
                result.failed_urls.append(url)
                result.errors.append(f"{url}: {e}")
                result.mark_partial()
                record_page_fetch(source.id, "failed")
                continue

            if response.not_modified:
                result.not_modified_documents.append(
                    NotModifiedDocument(canonical_url=url, fetch=response.metadata())
                )
                result.fetched_urls.append(url)
                record_page_fetch(source.id, "not_modified")
                continue

            record_page_fetch(source.id, "ok")
            title, main_html, text = self._process_page(response.text, url, policy, result)

            if len(text) >= min_text_chars:
                chunks = chunker.chunk(text)
                if chunks:
                    result.fetched_urls.append(url)
                    result.documents.append(IngestedDocument(
                        canonical_url=url,
                        title=title,
                        content=text,
                        chunks=chunks,
                        fetch=response.metadata(),
                        language=policy.language,
                        version_tag=policy.version_tag,
                    ))
            else:
                logger.debug(f"Skipping {url}: {len(text)} chars below minimum {min_text_chars}")

            if depth < max_depth:
                for link in extract_links(main_html, url):
                    if link not in seen and is_allowed_url(link, source.base_url, policy):
                        queue.append((link, depth + 1))

        result.finalize()

        logger.info(f"Crawl of {source.id} finished with status {result.status.value}: "
                    f"{len(result.documents)} documents, {len(result.not_modified_documents)} not modified, "
                    f"{len(result.failed_urls)} failed")
        return result
