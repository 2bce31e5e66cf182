"""URL normalization for the crawl frontier.

The normalized form is the key of the frontier and the visited set, so two
links that differ only by fragment, trailing slash or host case collapse to
one entry.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urljoin, urlparse, urlunparse, parse_qsl, urlencode

from config.policy_loader import policy_config

logger = logging.getLogger(__name__)


class URLNormalizer:
    """Resolve, filter and canonicalize URLs relative to a crawl root."""

    def __init__(self,
                 root_url: str,
                 same_origin_only: bool = True,
                 remove_query_params: bool = False,
                 blocked_extensions: Optional[Iterable[str]] = None):
        root = self.normalize(root_url)
        if root is None:
            raise ValueError(f"Invalid root URL: {root_url}")
        self.root_url = root
        self.root_origin = self.origin(root)
        self.allowed_origins = {self.root_origin}
        self.same_origin_only = same_origin_only
        self.remove_query_params = remove_query_params
        if blocked_extensions is None:
            blocked_extensions = policy_config.get_blocked_extensions()
        self.blocked_extensions = tuple(ext.lower() for ext in blocked_extensions)

    @staticmethod
    def origin(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @staticmethod
    def normalize(url: str, remove_query_params: bool = False) -> Optional[str]:
        """Canonical form of an absolute http(s) URL, or None."""
        try:
            parsed = urlparse(url.strip())
        except ValueError:
            return None

        scheme = parsed.scheme.lower()
        if scheme not in ("http", "https") or not parsed.netloc:
            return None

        netloc = parsed.netloc.lower()
        if scheme == "http" and netloc.endswith(":80"):
            netloc = netloc[:-3]
        elif scheme == "https" and netloc.endswith(":443"):
            netloc = netloc[:-4]

        path = parsed.path or "/"
        if len(path) > 1 and path.endswith("/"):
            path = path.rstrip("/") or "/"

        query = ""
        if parsed.query and not remove_query_params:
            query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))

        return urlunparse((scheme, netloc, path, "", query, ""))

    def allow_origin(self, url: str) -> None:
        """Treat another seed's origin as same-origin."""
        self.allowed_origins.add(self.origin(url))

    def has_blocked_extension(self, url: str) -> bool:
        path = urlparse(url).path.lower()
        return path.endswith(self.blocked_extensions)

    def resolve(self, href: str, base_url: Optional[str] = None) -> Optional[str]:
        """Resolve a link found on ``base_url``; None when it must not be followed."""
        href = (href or "").strip()
        if not href or href.startswith(("#", "mailto:", "javascript:", "tel:", "data:")):
            return None

        absolute = urljoin(base_url or self.root_url, href)
        normalized = self.normalize(absolute, self.remove_query_params)
        if normalized is None:
            return None

        if self.same_origin_only and self.origin(normalized) not in self.allowed_origins:
            return None

        if self.has_blocked_extension(normalized):
            logger.debug(f"Skipping blocked extension: {normalized}")
            return None

        return normalized
