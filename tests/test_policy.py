"""Tests for robots.txt policy, URL filtering and URL normalization."""

import pytest

from conftest import FakeFetcher
from pipelines.policy import RobotsPolicy
from pipelines.url_normalizer import URLNormalizer
from services.shared.errors import TransientNetworkError

ROOT = "https://docs.example.com"


class TestRobotsPolicy:
    """robots.txt fetching and caching."""

    @pytest.mark.asyncio
    async def test_disallow_rules_are_honored(self):
        fetcher = FakeFetcher({f"{ROOT}/robots.txt": (200, "User-agent: *\nDisallow: /private\n",
                                                      "text/plain")})
        policy = RobotsPolicy(fetcher)

        assert await policy.can_fetch(f"{ROOT}/guide") is True
        assert await policy.can_fetch(f"{ROOT}/private/page") is False

    @pytest.mark.asyncio
    async def test_robots_fetched_once_per_host(self):
        fetcher = FakeFetcher({f"{ROOT}/robots.txt": (200, "User-agent: *\nAllow: /\n", "text/plain")})
        policy = RobotsPolicy(fetcher)

        for path in ("/a", "/b", "/c"):
            await policy.can_fetch(f"{ROOT}{path}")

        assert fetcher.requested.count(f"{ROOT}/robots.txt") == 1
        assert policy.cached_hosts() == [ROOT]

    @pytest.mark.asyncio
    async def test_missing_robots_allows_all(self):
        policy = RobotsPolicy(FakeFetcher({}))
        assert await policy.can_fetch(f"{ROOT}/anything") is True

    @pytest.mark.asyncio
    async def test_unreachable_robots_allows_all(self):
        fetcher = FakeFetcher({f"{ROOT}/robots.txt": TransientNetworkError("connection refused")})
        policy = RobotsPolicy(fetcher)
        assert await policy.can_fetch(f"{ROOT}/anything") is True

    @pytest.mark.asyncio
    async def test_forbidden_robots_disallows_all(self):
        fetcher = FakeFetcher({f"{ROOT}/robots.txt": (403, "", "text/plain")})
        policy = RobotsPolicy(fetcher)
        assert await policy.can_fetch(f"{ROOT}/guide") is False

    @pytest.mark.asyncio
    async def test_crawl_delay_is_capped(self):
        fetcher = FakeFetcher({f"{ROOT}/robots.txt": (200, "User-agent: *\nCrawl-delay: 120\n",
                                                      "text/plain")})
        policy = RobotsPolicy(fetcher)

        delay = await policy.crawl_delay(f"{ROOT}/guide")
        assert delay == policy.max_crawl_delay

    def test_non_documentation_urls(self):
        policy = RobotsPolicy(FakeFetcher({}))

        assert policy.is_non_documentation(f"{ROOT}/blog/post")
        assert policy.is_non_documentation(f"{ROOT}/pricing")
        assert policy.is_non_documentation(f"{ROOT}/img/logo.png")
        assert not policy.is_non_documentation(f"{ROOT}/docs/getting-started")

    def test_blacklisted_urls(self):
        policy = RobotsPolicy(FakeFetcher({}))
        assert policy.is_url_blacklisted(f"{ROOT}/login")
        assert not policy.is_url_blacklisted(f"{ROOT}/docs/login-flow")


class TestURLNormalizer:
    """URL canonicalization and link resolution."""

    def test_normalize_strips_fragment_and_trailing_slash(self):
        assert URLNormalizer.normalize("HTTPS://Docs.Example.com/Guide/#intro") == \
            "https://docs.example.com/Guide"

    def test_root_path_keeps_slash(self):
        assert URLNormalizer.normalize("https://docs.example.com") == "https://docs.example.com/"

    def test_default_ports_are_dropped(self):
        assert URLNormalizer.normalize("https://docs.example.com:443/a") == "https://docs.example.com/a"

    def test_query_is_sorted(self):
        assert URLNormalizer.normalize("https://docs.example.com/a?b=2&a=1") == \
            "https://docs.example.com/a?a=1&b=2"

    def test_non_http_schemes_are_rejected(self):
        assert URLNormalizer.normalize("ftp://docs.example.com/file") is None
        assert URLNormalizer.normalize("not a url") is None

    def test_resolve_relative_links(self):
        normalizer = URLNormalizer(f"{ROOT}/docs/")
        assert normalizer.resolve("../api", f"{ROOT}/docs/guide/") == f"{ROOT}/docs/api"
        assert normalizer.resolve("setup#install", f"{ROOT}/docs/") == f"{ROOT}/docs/setup"

    def test_resolve_rejects_other_origins(self):
        normalizer = URLNormalizer(ROOT)
        assert normalizer.resolve("https://other.example.com/page") is None

    def test_additional_origins_can_be_allowed(self):
        normalizer = URLNormalizer(ROOT)
        normalizer.allow_origin("https://api.example.com/reference")
        assert normalizer.resolve("https://api.example.com/reference/x") == \
            "https://api.example.com/reference/x"

    def test_cross_origin_allowed_when_not_same_origin_only(self):
        normalizer = URLNormalizer(ROOT, same_origin_only=False)
        assert normalizer.resolve("https://other.example.com/page") == "https://other.example.com/page"

    @pytest.mark.parametrize("href", ["#top", "mailto:team@example.com", "javascript:void(0)", ""])
    def test_resolve_ignores_non_links(self, href):
        assert URLNormalizer(ROOT).resolve(href) is None

    def test_resolve_rejects_binary_extensions(self):
        normalizer = URLNormalizer(ROOT)
        assert normalizer.resolve("/downloads/manual.pdf") is None
        assert normalizer.resolve("/static/logo.png") is None

    def test_invalid_root_raises(self):
        with pytest.raises(ValueError):
            URLNormalizer("mailto:someone@example.com")
