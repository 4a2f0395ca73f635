"""
Snapshot service: cached, single-flight, retried rendering.

snapshot(url) is the pure pipeline function every HTML consumer goes
through (the snapshot endpoint, extraction, page text and search).
"""

from typing import Optional, Protocol

from .cache import SingleFlight, TTLCache
from .logging_conf import get_logger
from .retry import RetryPolicy
from .urls import normalize_url, validate_url

logger = get_logger(__name__)


class PageRenderer(Protocol):
    async def render(self, url: str) -> str: ...


class SnapshotService:
    """
    Returns rendered HTML for a URL.

    Order of operations: validate (InputError, no network), render cache
    lookup, then a single shared Retry(Renderer) call per normalized URL.
    Only successful renders are cached.
    """

    def __init__(
        self,
        renderer: PageRenderer,
        cache: Optional[TTLCache[str]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.renderer = renderer
        self.cache = cache if cache is not None else TTLCache(name="render")
        self.retry_policy = retry_policy or RetryPolicy()
        self.flights = SingleFlight(name="render")

    async def snapshot(self, url: str) -> str:
        target = validate_url(url)
        key = normalize_url(target)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("render_cache_hit", url=key)
            return cached

        logger.debug("render_cache_miss", url=key)
        return await self.flights.do(key, lambda: self._render_and_store(key, target))

    async def _render_and_store(self, key: str, url: str) -> str:
        html = await self.retry_policy.call(self.renderer.render, url)
        self.cache.set(key, html)
        return html

    def stats(self) -> dict:
        return {**self.cache.stats(), **self.flights.stats()}
