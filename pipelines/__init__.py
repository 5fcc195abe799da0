"""Pipelines package for docwatch.

Provides URL policy, fetching, extraction, sanitization, chunking and crawling.
"""

from .policy import CrawlPolicy, canonicalize_url, is_allowed_url
from .fetcher import FetchError, FetchMetadata, FetchResult, fetch_with_retry
from .extractor import (
    extract_links,
    extract_main_html,
    extract_sitemap_urls,
    extract_title,
    html_to_text,
    normalize_whitespace,
    strip_html_noise,
    strip_noise_lines
)
from .security import SanitizedText, detect_prompt_injection_signals, sanitize_prompt_injection_lines
from .chunker import DocumentChunker, DocumentChunk, chunk_structured_text, estimate_token_count
from .crawler import (
    WebCrawler,
    RunStatus,
    IngestRunResult,
    IngestedDocument,
    NotModifiedDocument
)

__all__ = [
    # Policy
    'CrawlPolicy',
    'canonicalize_url',
    'is_allowed_url',

    # Fetcher
    'FetchError',
    'FetchMetadata',
    'FetchResult',
    'fetch_with_retry',

    # Extractor
    'extract_links',
    'extract_main_html',
    'extract_sitemap_urls',
    'extract_title',
    'html_to_text',
    'normalize_whitespace',
    'strip_html_noise',
    'strip_noise_lines',

    # Sanitizer
    'SanitizedText',
    'detect_prompt_injection_signals',
    'sanitize_prompt_injection_lines',

    # Chunker
    'DocumentChunker',
    'DocumentChunk',
    'chunk_structured_text',
    'estimate_token_count',

    # Crawler
    'WebCrawler',
    'RunStatus',
    'IngestRunResult',
    'IngestedDocument',
    'NotModifiedDocument'
]
