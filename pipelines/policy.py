"""Robots.txt compliance and URL pattern policy for the crawler."""

import asyncio
import logging
import re
import urllib.robotparser
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from urllib.parse import urlparse

from config.policy_loader import PolicyConfig, policy_config
from services.shared.errors import PipelineError

from .fetcher import Fetcher

logger = logging.getLogger(__name__)


@dataclass
class RobotsCache:
    """Cache entry for robots.txt data."""
    robots_parser: urllib.robotparser.RobotFileParser
    fetched_at: datetime
    ttl_hours: int = 24

    def is_expired(self) -> bool:
        """Check if the cache entry has expired."""
        return datetime.now() - self.fetched_at > timedelta(hours=self.ttl_hours)


def _allow_all_parser(robots_url: str) -> urllib.robotparser.RobotFileParser:
    rp = urllib.robotparser.RobotFileParser(robots_url)
    rp.parse([])
    rp.allow_all = True
    return rp


class RobotsPolicy:
    """Per-crawl robots.txt and URL pattern checks.

    robots.txt is fetched once per scheme+host and cached. Concurrent callers
    for the same host share a single in-flight fetch.
    """

    def __init__(self, fetcher: Fetcher, user_agent: str = None,
                 config: Optional[PolicyConfig] = None):
        self.config = config or policy_config
        self.fetcher = fetcher
        self.user_agent = user_agent or self.config.get_user_agent()
        self.robots_cache: Dict[str, RobotsCache] = {}
        self._pending: Dict[str, asyncio.Future] = {}

        cache_settings = self.config.get_cache_settings()
        self.ttl_hours = cache_settings['ttl_hours']
        delay_settings = self.config.get_crawl_delay_settings()
        self.respect_crawl_delay = delay_settings['respect']
        self.max_crawl_delay = delay_settings['max']
        self.robots_timeout = self.config.get_robots_timeout()

        self.url_blacklist = [re.compile(p, re.IGNORECASE) for p in self.config.get_url_blacklist()]
        self.non_doc_patterns = [re.compile(p, re.IGNORECASE)
                                 for p in self.config.get_non_documentation_patterns()]

    @staticmethod
    def get_domain_key(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    def get_robots_txt_url(self, url: str) -> str:
        return f"{self.get_domain_key(url)}/robots.txt"

    def is_url_blacklisted(self, url: str) -> bool:
        """Check if URL matches policy blacklist patterns."""
        for pattern in self.url_blacklist:
            if pattern.search(url):
                logger.debug(f"URL {url} matches blacklist pattern: {pattern.pattern}")
                return True
        return False

    def is_non_documentation(self, url: str) -> bool:
        """Blog, pricing, legal and similar pages that are not product docs."""
        path = urlparse(url).path.lower()
        return any(p.search(path) for p in self.non_doc_patterns)

    async def _download(self, url: str) -> urllib.robotparser.RobotFileParser:
        robots_url = self.get_robots_txt_url(url)
        try:
            logger.info(f"Fetching robots.txt from {robots_url}")
            response = await self.fetcher.get(robots_url, timeout=self.robots_timeout)
        except (PipelineError, asyncio.TimeoutError) as e:
            # Unreachable robots.txt: be permissive
            logger.warning(f"Could not fetch {robots_url}: {e}; allowing all")
            return _allow_all_parser(robots_url)

        rp = urllib.robotparser.RobotFileParser(robots_url)
        if response.status in (401, 403):
            rp.parse([])
            rp.disallow_all = True
            logger.info(f"robots.txt at {robots_url} is access-restricted; disallowing all")
        elif response.ok:
            rp.parse(response.text.splitlines())
        else:
            logger.info(f"No robots.txt found for {robots_url} (HTTP {response.status})")
            rp = _allow_all_parser(robots_url)
        return rp

    async def get_parser(self, url: str) -> urllib.robotparser.RobotFileParser:
        """Return the cached parser for the URL's host, fetching it if needed."""
        domain_key = self.get_domain_key(url)

        cache_entry = self.robots_cache.get(domain_key)
        if cache_entry and not cache_entry.is_expired():
            return cache_entry.robots_parser

        pending = self._pending.get(domain_key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._pending[domain_key] = future
        try:
            rp = await self._download(url)
            self.robots_cache[domain_key] = RobotsCache(
                robots_parser=rp, fetched_at=datetime.now(), ttl_hours=self.ttl_hours
            )
            future.set_result(rp)
            return rp
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Retrieve so the loop doesn't warn when nobody else was waiting
            future.exception()
            raise
        finally:
            self._pending.pop(domain_key, None)

    async def can_fetch(self, url: str) -> bool:
        """Whether robots.txt allows our user agent to fetch the URL."""
        rp = await self.get_parser(url)
        allowed = rp.can_fetch(self.user_agent, url)
        if not allowed:
            logger.info(f"robots.txt disallows {url}")
        return allowed

    async def crawl_delay(self, url: str) -> Optional[float]:
        """Crawl-delay for the host in seconds, capped by policy."""
        if not self.respect_crawl_delay:
            return None
        rp = await self.get_parser(url)
        delay = rp.crawl_delay(self.user_agent)
        if delay is None:
            return None
        return min(float(delay), self.max_crawl_delay)

    def cached_hosts(self) -> List[str]:
        return list(self.robots_cache.keys())
