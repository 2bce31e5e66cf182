"""HTTP fetching for the crawler and robots policy."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import aiohttp

from services.shared.errors import TransientNetworkError, classify_provider_error

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    """Body and headers of a completed GET."""
    url: str
    status: int
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    final_url: Optional[str] = None

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Fetcher(Protocol):
    async def get(self, url: str, timeout: float) -> FetchResponse: ...


class AiohttpFetcher:
    """aiohttp-backed fetcher sharing one session per crawl."""

    def __init__(self, user_agent: str, max_connections: int = 10,
                 max_body_bytes: Optional[int] = None):
        self.user_agent = user_agent
        self.max_connections = max_connections
        self.max_body_bytes = max_body_bytes
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self):
        if self.session is None or self.session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_connections * 2)
            self.session = aiohttp.ClientSession(
                connector=connector,
                headers={'User-Agent': self.user_agent}
            )

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def get(self, url: str, timeout: float) -> FetchResponse:
        await self._ensure_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with self.session.get(url, allow_redirects=True, timeout=client_timeout) as response:
                headers = {k.lower(): v for k, v in response.headers.items()}
                declared = response.content_length
                if self.max_body_bytes and declared and declared > self.max_body_bytes:
                    # Caller decides what to do with oversized bodies
                    return FetchResponse(url=url, status=response.status, headers=headers,
                                         final_url=str(response.url))
                text = await response.text(errors="replace")
                return FetchResponse(url=url, status=response.status, text=text,
                                     headers=headers, final_url=str(response.url))
        except aiohttp.ClientError as e:
            error = classify_provider_error(e)
            raise error from e
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise TransientNetworkError(f"Timed out fetching {url}", cause=e) from e
