"""Tests for URL canonicalization and crawl scope."""

import pytest

from pipelines.policy import CrawlPolicy, canonicalize_url, is_allowed_url


class TestCanonicalizeUrl:
    """Test canonical URL normalization."""

    @pytest.mark.parametrize("raw, expected", [
        ("https://Docs.Example.com/guide/#setup", "https://docs.example.com/guide"),
        ("https://docs.example.com/guide///", "https://docs.example.com/guide"),
        ("https://docs.example.com", "https://docs.example.com/"),
        ("https://docs.example.com/a?utm_source=x&page=2", "https://docs.example.com/a?page=2"),
        ("https://docs.example.com/a?ref=nav&source=footer", "https://docs.example.com/a"),
    ])
    def test_normalizes(self, raw, expected):
        assert canonicalize_url(raw) == expected

    def test_keeps_untouched_query_verbatim(self):
        url = "https://docs.example.com/search?q=a%20b&lang=en"
        assert canonicalize_url(url) == url

    @pytest.mark.parametrize("raw", [
        "https://docs.example.com/guide/",
        "HTTPS://DOCS.EXAMPLE.COM/Guide?utm_medium=email#top",
        "https://docs.example.com/?ref=x",
        "https://docs.example.com/a?b=1&c=2&utm_campaign=z",
    ])
    def test_is_idempotent(self, raw):
        once = canonicalize_url(raw)
        assert canonicalize_url(once) == once


class TestIsAllowedUrl:
    """Test per-source crawl scope."""

    BASE = "https://docs.example.com"

    def test_same_host_allowed(self):
        assert is_allowed_url("https://docs.example.com/guide", self.BASE)

    def test_other_host_rejected(self):
        assert not is_allowed_url("https://evil.example.org/guide", self.BASE)

    def test_non_http_scheme_rejected(self):
        assert not is_allowed_url("ftp://docs.example.com/file", self.BASE)

    def test_base_path_enforced(self):
        base = "https://example.com/docs"
        assert is_allowed_url("https://example.com/docs/start", base)
        assert not is_allowed_url("https://example.com/blog/post", base)

    def test_asset_extensions_rejected(self):
        assert not is_allowed_url("https://docs.example.com/logo.PNG", self.BASE)
        assert not is_allowed_url("https://docs.example.com/guide.pdf", self.BASE)

    def test_allow_and_deny_prefixes(self):
        policy = CrawlPolicy(allow_path_prefixes=["/api", "/guides"], deny_path_prefixes=["/api/legacy"])

        assert is_allowed_url("https://docs.example.com/api/charges", self.BASE, policy)
        assert not is_allowed_url("https://docs.example.com/blog", self.BASE, policy)
        assert not is_allowed_url("https://docs.example.com/api/legacy/v1", self.BASE, policy)

    def test_malformed_url_rejected(self):
        assert not is_allowed_url("http://[::1", self.BASE)


class TestCrawlPolicy:
    """Test policy construction from YAML data."""

    def test_from_dict_compiles_patterns(self):
        policy = CrawlPolicy.from_dict({
            "allow_path_prefixes": ["/docs"],
            "html_noise_patterns": ["<nav[\\s\\S]*?</nav>"],
            "line_noise_patterns": ["^ask ai$"],
            "version_tag": "v2",
            "max_pages": 5,
        })

        assert policy.allow_path_prefixes == ["/docs"]
        assert policy.html_noise_patterns[0].search("<NAV>x</NAV>")
        assert policy.line_noise_patterns[0].search("Ask AI")
        assert policy.version_tag == "v2"
        assert policy.max_pages == 5
        assert policy.max_depth is None

    def test_from_dict_defaults(self):
        policy = CrawlPolicy.from_dict(None)
        assert policy.language == "en"
        assert policy.version_tag == "latest"
        assert policy.html_noise_patterns == []
