"""HTML to structured text extraction.

The conversion is a fixed sequence of steps and the order matters:

1. isolate the main content (``<main>``, then ``<article>``, then ``<body>``)
2. strip per-source HTML noise blocks (nav, aside, footer, ...)
3. convert to text, keeping ``## heading`` markers and fenced code blocks
4. drop per-source boilerplate lines
"""

import logging
import re
from typing import Iterable, List, Optional, Pattern
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from .policy import CrawlPolicy, canonicalize_url, is_allowed_url

logger = logging.getLogger(__name__)

BLOCK_TAG_CLOSERS = [
    "p", "div", "li", "pre", "code", "section", "article", "main",
    "ul", "ol", "table", "tr", "td", "blockquote",
]

HTML_ENTITIES = [
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
]

_SCRIPT_RE = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_NOSCRIPT_RE = re.compile(r"<noscript[\s\S]*?</noscript>", re.IGNORECASE)
_CODE_BLOCK_RE = re.compile(r"<pre[^>]*>\s*<code([^>]*)>([\s\S]*?)</code>\s*</pre>", re.IGNORECASE)
_CODE_LANG_RE = re.compile(r"class=[\"'][^\"']*language-([a-z0-9_+-]+)[^\"']*[\"']", re.IGNORECASE)
_HEADING_RE = re.compile(r"<h([1-3])[^>]*>([\s\S]*?)</h\1>", re.IGNORECASE)
_BR_RE = re.compile(r"<br\s*/?\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_TITLE_SUFFIX_RE = re.compile(r"\s*\|.*$")
_LOC_RE = re.compile(r"<loc>(.*?)</loc>", re.IGNORECASE | re.MULTILINE)


def decode_html_entities(value: str) -> str:
    for entity, replacement in HTML_ENTITIES:
        value = value.replace(entity, replacement)
    # Literal no-break spaces count as spaces too
    return value.replace("\xa0", " ")


def normalize_whitespace(value: str) -> str:
    """Collapse whitespace: at most one blank line, no runs of spaces or tabs, trimmed."""
    value = value.replace("\r", "")
    value = re.sub(r"[ \t]+\n", "\n", value)
    value = re.sub(r"\n{3,}", "\n\n", value)
    value = re.sub(r"[ \t]{2,}", " ", value)
    return value.strip()


def strip_tags(value: str) -> str:
    return _TAG_RE.sub(" ", value)


def _source_offset(html: str, line: int, column: int) -> int:
    """Character offset of a parser (line, column) position; lines are 1-based."""
    offset = 0
    for _ in range(line - 1):
        offset = html.index("\n", offset) + 1
    return offset + column


def _raw_inner_html(html: str, element) -> Optional[str]:
    """Slice the element's inner markup out of the fetched document, byte for byte."""
    if element.sourceline is None or element.sourcepos is None:
        return None
    start = _source_offset(html, element.sourceline, element.sourcepos)
    open_end = html.find(">", start)
    if open_end < 0:
        return None
    open_end += 1

    depth = 1
    tag_re = re.compile(rf"<(/?){element.name}(?=[\s/>])[^>]*>", re.IGNORECASE)
    for match in tag_re.finditer(html, open_end):
        if match.group(1):
            depth -= 1
            if depth == 0:
                return html[open_end:match.start()]
        elif not match.group(0).endswith("/>"):
            depth += 1
    # Unclosed element runs to the end of the document
    return html[open_end:]


def extract_main_html(html: str) -> str:
    """Return the inner HTML of the first non-empty main/article/body element.

    The inner HTML is cut from the fetched markup rather than re-serialized,
    so per-source noise patterns see the page's own quoting and entities.
    Falls back to the whole document when none is present.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag_name in ("main", "article", "body"):
        element = soup.find(tag_name)
        if element is None:
            continue
        inner = _raw_inner_html(html, element)
        if inner is None:
            inner = element.decode_contents()
        if inner.strip():
            return inner
    return html


def strip_html_noise(html: str, patterns: Iterable[Pattern]) -> str:
    cleaned = html
    for pattern in patterns:
        cleaned = pattern.sub(" ", cleaned)
    return cleaned


def _render_code_block(match: re.Match) -> str:
    code_attrs, code_inner = match.group(1), match.group(2)
    lang_match = _CODE_LANG_RE.search(code_attrs)
    lang = lang_match.group(1).lower() if lang_match else ""
    code = decode_html_entities(code_inner)
    code = _BR_RE.sub("\n", code)
    code = re.sub(r"<[^>]+>", "", code)
    code = code.replace("\r", "").strip()
    return f"\n\n```{lang}\n{code}\n```\n\n"


def _render_heading(match: re.Match) -> str:
    heading_text = normalize_whitespace(decode_html_entities(strip_tags(match.group(2))))
    if not heading_text:
        return "\n"
    return f"\n\n## {heading_text}\n\n"


def html_to_text(html: str) -> str:
    """Convert an HTML fragment into structured plain text.

    Headings h1-h3 become ``## heading`` lines and ``<pre><code>`` blocks become
    fenced blocks tagged with the ``language-*`` class when present.
    """
    cleaned = _SCRIPT_RE.sub("", html)
    cleaned = _STYLE_RE.sub("", cleaned)
    cleaned = _NOSCRIPT_RE.sub("", cleaned)

    cleaned = _CODE_BLOCK_RE.sub(_render_code_block, cleaned)
    cleaned = _HEADING_RE.sub(_render_heading, cleaned)

    for tag in BLOCK_TAG_CLOSERS:
        cleaned = re.sub(rf"</{tag}>", f"</{tag}>\n", cleaned, flags=re.IGNORECASE)

    cleaned = _BR_RE.sub("\n", cleaned)
    cleaned = _TAG_RE.sub(" ", cleaned)

    return normalize_whitespace(decode_html_entities(cleaned))


def strip_noise_lines(text: str, patterns: Iterable[Pattern]) -> str:
    """Drop lines whose trimmed content matches any boilerplate pattern.

    Blank lines are kept so paragraph boundaries survive for chunking.
    """
    patterns = list(patterns)
    if not patterns:
        return text

    kept: List[str] = []
    for line in text.split("\n"):
        normalized = line.strip()
        if normalized and any(pattern.search(normalized) for pattern in patterns):
            continue
        kept.append(line)

    return normalize_whitespace("\n".join(kept))


def extract_title(html: str, fallback_url: str) -> str:
    """Page title with any ``" | Brand"`` suffix removed; the URL when absent."""
    soup = BeautifulSoup(html, "html.parser")
    if soup.title is None:
        return fallback_url

    raw = decode_html_entities(soup.title.get_text())
    title = normalize_whitespace(_TITLE_SUFFIX_RE.sub("", raw))
    return title or fallback_url


def extract_links(html: str, page_url: str) -> List[str]:
    """Absolute, canonical, de-duplicated links in document order."""
    soup = BeautifulSoup(html, "html.parser")
    urls: List[str] = []
    seen = set()

    for anchor in soup.find_all(href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("mailto:", "javascript:")):
            continue
        try:
            absolute = canonicalize_url(urljoin(page_url, href))
        except ValueError:
            continue
        if absolute not in seen:
            seen.add(absolute)
            urls.append(absolute)

    return urls


def extract_sitemap_urls(xml: str, base_url: str, policy: Optional[CrawlPolicy] = None) -> List[str]:
    """Canonical ``<loc>`` URLs from a sitemap that pass the crawl policy."""
    urls: List[str] = []
    for match in _LOC_RE.finditer(xml):
        loc = match.group(1).strip()
        if not loc:
            continue
        try:
            url = canonicalize_url(loc)
        except ValueError:
            continue
        if is_allowed_url(url, base_url, policy) and url not in urls:
            urls.append(url)
    return urls
