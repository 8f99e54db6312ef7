"""Tests for URL normalization and origin checks."""

import pytest

from pipelines.errors import MalformedURL
from pipelines.urls import (
    extract_domain,
    is_within_domain_limit,
    normalize_url,
    origin_of,
    same_origin,
)


class TestNormalizeUrl:
    """Canonical URL form used as the page identity."""

    def test_lowercases_scheme_and_host(self):
        assert normalize_url("HTTPS://Example.COM/About") == "https://example.com/About"

    def test_drops_fragment_and_default_port(self):
        assert normalize_url("https://example.com:443/docs#intro") == "https://example.com/docs"
        assert normalize_url("http://example.com:80/") == "http://example.com/"

    def test_keeps_non_default_port(self):
        assert normalize_url("http://example.com:8080/a") == "http://example.com:8080/a"

    def test_strips_trailing_slash_except_root(self):
        assert normalize_url("https://example.com/docs/") == "https://example.com/docs"
        assert normalize_url("https://example.com") == "https://example.com/"

    def test_sorts_query_parameters(self):
        assert normalize_url("https://example.com/s?b=2&a=1&a=0") == "https://example.com/s?a=0&a=1&b=2"

    @pytest.mark.parametrize("url", [
        "HTTPS://Example.com:443/a/b/?z=1&y=2#frag",
        "http://example.com/",
        "https://example.com/path?q=hello+world",
    ])
    def test_idempotent(self, url):
        once = normalize_url(url)
        assert normalize_url(once) == once

    @pytest.mark.parametrize("url", ["", "not a url", "ftp://example.com/", "/relative/path", "https://"])
    def test_rejects_malformed(self, url):
        with pytest.raises(MalformedURL):
            normalize_url(url)


class TestOrigins:

    def test_same_origin_ignores_default_port(self):
        assert same_origin("https://example.com/a", "https://example.com:443/b")

    def test_different_scheme_or_host(self):
        assert not same_origin("http://example.com/", "https://example.com/")
        assert not same_origin("https://example.com/", "https://www.example.com/")

    def test_invalid_input_is_never_same_origin(self):
        assert not same_origin("not a url", "https://example.com/")
        assert not same_origin(None, "https://example.com/")

    def test_origin_of(self):
        assert origin_of("https://Example.com:8443/a?b=1") == "https://example.com:8443"
        assert origin_of("https://example.com/a") == "https://example.com"


class TestDomains:

    def test_extract_domain(self):
        assert extract_domain("https://Docs.Example.com/page") == "docs.example.com"

    def test_extract_domain_requires_dot(self):
        with pytest.raises(MalformedURL):
            extract_domain("http://localhost/")

    def test_domain_limit_allows_subdomains(self):
        assert is_within_domain_limit("https://docs.example.com/", "example.com")
        assert is_within_domain_limit("https://example.com/", "example.com")
        assert is_within_domain_limit("https://anything.org/", None)

    def test_domain_limit_rejects_other_domains(self):
        assert not is_within_domain_limit("https://badexample.com/", "example.com")
        assert not is_within_domain_limit("not a url", "example.com")
