"""URL policy for crawling: canonicalization and allow/deny filtering."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Pattern
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

TRACKING_QUERY_KEYS = {"ref", "source"}
TRACKING_QUERY_PREFIXES = ("utm_",)

IGNORED_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico",
    ".pdf", ".zip", ".tar", ".gz",
    ".mp4", ".mp3",
    ".woff", ".woff2", ".ttf",
)


@dataclass
class CrawlPolicy:
    """Per-source crawl policy.

    Attributes:
        allow_path_prefixes: If non-empty, a URL path must start with one of these
        deny_path_prefixes: A URL path must start with none of these
        html_noise_patterns: Regexes stripped from the main HTML before conversion
        line_noise_patterns: Regexes matched against trimmed text lines to drop boilerplate
        min_text_chars: Minimum sanitized text length for a page to become a document
        language: Language tag recorded on emitted documents
        version_tag: Version tag recorded on emitted documents
        max_pages: Per-source override of the page cap
        max_depth: Per-source override of the link depth
    """
    allow_path_prefixes: List[str] = field(default_factory=list)
    deny_path_prefixes: List[str] = field(default_factory=list)
    html_noise_patterns: List[Pattern] = field(default_factory=list)
    line_noise_patterns: List[Pattern] = field(default_factory=list)
    min_text_chars: Optional[int] = None
    language: str = "en"
    version_tag: str = "latest"
    max_pages: Optional[int] = None
    max_depth: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CrawlPolicy':
        """Build a policy from a YAML ``policy`` block.

        HTML noise patterns match across lines; line noise patterns are
        case-insensitive and anchored by the caller's regex.
        """
        data = data or {}
        return cls(
            allow_path_prefixes=list(data.get('allow_path_prefixes') or []),
            deny_path_prefixes=list(data.get('deny_path_prefixes') or []),
            html_noise_patterns=[
                re.compile(p, re.IGNORECASE | re.DOTALL) for p in data.get('html_noise_patterns') or []
            ],
            line_noise_patterns=[
                re.compile(p, re.IGNORECASE) for p in data.get('line_noise_patterns') or []
            ],
            min_text_chars=data.get('min_text_chars'),
            language=data.get('language', 'en'),
            version_tag=data.get('version_tag', 'latest'),
            max_pages=data.get('max_pages'),
            max_depth=data.get('max_depth'),
        )


def _is_tracking_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in TRACKING_QUERY_KEYS or lowered.startswith(TRACKING_QUERY_PREFIXES)


def canonicalize_url(url: str) -> str:
    """Normalize a URL into a stable document identity key.

    Drops the fragment and tracking query parameters and removes trailing
    slashes from the path (the root path stays ``/``). Idempotent.
    """
    parts = urlsplit(url.strip())

    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        kept = [(k, v) for k, v in pairs if not _is_tracking_key(k)]
        if len(kept) != len(pairs):
            query = urlencode(kept)

    path = parts.path.rstrip("/") or "/"

    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ""))


def is_allowed_url(url: str, base_url: str, policy: Optional[CrawlPolicy] = None) -> bool:
    """Check whether a URL is in scope for a source.

    Args:
        url: Candidate URL (absolute)
        base_url: The source's base URL; host and path prefix are enforced
        policy: Optional allow/deny prefix policy

    Returns:
        True if the URL may be crawled
    """
    try:
        parsed = urlsplit(url)
        base = urlsplit(base_url)
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https"):
        return False

    if parsed.netloc.lower() != base.netloc.lower():
        return False

    path = parsed.path or "/"
    base_path = base.path.rstrip("/")
    if base_path and not path.startswith(base_path):
        return False

    if policy is not None:
        if policy.allow_path_prefixes and not any(
            path.startswith(prefix) for prefix in policy.allow_path_prefixes
        ):
            return False
        if any(path.startswith(prefix) for prefix in policy.deny_path_prefixes):
            return False

    if path.lower().endswith(IGNORED_EXTENSIONS):
        logger.debug(f"Skipping asset URL: {url}")
        return False

    return True
