"""Tests for HTML extraction."""

import re

from pipelines.extractor import (
    extract_links,
    extract_main_html,
    extract_sitemap_urls,
    extract_title,
    html_to_text,
    normalize_whitespace,
    strip_html_noise,
    strip_noise_lines,
)
from pipelines.policy import CrawlPolicy


def lines(text):
    return [line.strip() for line in text.split("\n")]


class TestMainContent:
    """Test the main/article/body fallback chain."""

    def test_prefers_main(self):
        html = "<body><nav>menu</nav><main><p>Main text</p></main><article>Other</article></body>"
        assert extract_main_html(html).strip() == "<p>Main text</p>"

    def test_falls_back_to_article_then_body(self):
        assert "Story" in extract_main_html("<body><article>Story</article></body>")
        assert extract_main_html("<html><body><p>Plain</p></body></html>").strip() == "<p>Plain</p>"

    def test_skips_empty_main(self):
        html = "<body><main>   </main><article>Article body</article></body>"
        assert "Article body" in extract_main_html(html)

    def test_fetched_markup_is_kept_verbatim(self):
        html = "<body><main>\n<div class='sidebar'>Links &amp; more</div><p>Body</p></main></body>"

        inner = extract_main_html(html)

        assert inner == "\n<div class='sidebar'>Links &amp; more</div><p>Body</p>"
        pattern = re.compile(r"<div class='sidebar'>[\s\S]*?</div>", re.IGNORECASE)
        assert strip_html_noise(inner, [pattern]).strip() == "<p>Body</p>"

    def test_multiline_document_offsets(self):
        html = '<html>\n<body>\n  <nav>x</nav>\n  <main id="m">\n<p>Deep</p>\n</main>\n</body></html>'
        assert extract_main_html(html).strip() == "<p>Deep</p>"

    def test_nested_elements_of_the_same_tag(self):
        inner = extract_main_html("<body><article><article>inner</article>tail</article><p>after</p></body>")
        assert inner == "<article>inner</article>tail"

    def test_whole_document_when_no_container(self):
        fragment = "<p>fragment only</p>"
        assert "fragment only" in extract_main_html(fragment)


class TestHtmlToText:
    """Test structured text conversion."""

    def test_headings_become_markers(self):
        text = html_to_text("<h1>Intro</h1><p>Hello</p><h2>Setup <em>now</em></h2><p>World</p>")
        assert lines(text) == ["## Intro", "", "Hello", "", "## Setup now", "", "World"]

    def test_code_block_is_fenced_with_language(self):
        html = '<p>Run:</p><pre><code class="language-Python">print(&quot;hi&quot;)<br>x = 1 &lt; 2</code></pre>'
        text = html_to_text(html)
        assert "```python\nprint(\"hi\")\nx = 1 < 2\n```" in text

    def test_scripts_and_styles_removed(self):
        html = "<script>var a = 1;</script><style>p{}</style><noscript>enable js</noscript><p>Visible</p>"
        assert html_to_text(html) == "Visible"

    def test_entities_decoded(self):
        assert html_to_text("<p>Fish &amp; chips&nbsp;today</p>") == "Fish & chips today"

    def test_block_elements_separate_lines(self):
        text = html_to_text("<ul><li>one</li><li>two</li></ul>")
        assert lines(text) == ["one", "two"]


class TestNoiseStripping:
    """Test per-source noise removal."""

    def test_html_noise_patterns(self):
        pattern = re.compile(r"<nav[\s\S]*?</nav>", re.IGNORECASE | re.DOTALL)
        assert "menu" not in strip_html_noise("<nav>menu</nav><p>body</p>", [pattern])

    def test_line_noise_patterns_keep_paragraphs(self):
        patterns = [re.compile(r"^ask ai$", re.IGNORECASE)]
        text = "First paragraph\n\nAsk AI\n\nSecond paragraph"
        assert strip_noise_lines(text, patterns) == "First paragraph\n\nSecond paragraph"

    def test_no_patterns_is_identity(self):
        assert strip_noise_lines("a\n\nb", []) == "a\n\nb"


class TestTitleAndLinks:
    """Test title and link extraction."""

    def test_title_suffix_removed(self):
        assert extract_title("<title>Webhooks | Stripe Documentation</title>", "https://x") == "Webhooks"

    def test_title_falls_back_to_url(self):
        assert extract_title("<p>no title</p>", "https://docs.example.com/a") == "https://docs.example.com/a"
        assert extract_title("<title> </title>", "https://docs.example.com/b") == "https://docs.example.com/b"

    def test_links_absolute_canonical_deduplicated(self):
        html = (
            '<a href="/guide/">Guide</a>'
            '<a href="https://docs.example.com/guide#top">Again</a>'
            '<a href="mailto:team@example.com">Mail</a>'
            '<a href="javascript:void(0)">JS</a>'
            '<a href="api?utm_source=nav">API</a>'
        )
        links = extract_links(html, "https://docs.example.com/start/")
        assert links == [
            "https://docs.example.com/guide",
            "https://docs.example.com/start/api",
        ]

    def test_sitemap_urls_filtered_by_policy(self):
        xml = """<urlset>
          <url><loc>https://docs.example.com/api/charges/</loc></url>
          <url><loc>https://docs.example.com/blog/news</loc></url>
          <url><loc>https://other.example.com/api/x</loc></url>
          <url><loc>https://docs.example.com/api/charges</loc></url>
        </urlset>"""
        policy = CrawlPolicy(allow_path_prefixes=["/api"])

        urls = extract_sitemap_urls(xml, "https://docs.example.com", policy)

        assert urls == ["https://docs.example.com/api/charges"]


def test_normalize_whitespace():
    assert normalize_whitespace("  a  \t b \n\n\n\nc \r\n") == "a b\n\nc"
