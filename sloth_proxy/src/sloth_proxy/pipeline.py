"""
Render-Extract-Publish pipeline.

Plain async functions over the services; the HTTP handlers, the CLI and
the scheduler are thin adapters around them.

Provides:
- build_feed: registry lookup -> extraction -> RSS
- run_batch: every active site, failures isolated per site
- page_text / search_page: text views over a snapshot
- preview: a short generic article list for any URL, no registry entry needed
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from bs4 import BeautifulSoup

from .cache import TTLCache
from .config import Settings
from .errors import InputError, InternalFault, NotFoundError, ProxyError
from .extraction import ExtractionService
from .extractor import Extractor, ExtractedItem, SelectorSchema
from .feed import FeedChannel, FeedPublisher
from .logging_conf import get_logger
from .registry import SiteConfig, SiteRegistry
from .renderer import Renderer
from .retry import RetryPolicy
from .snapshot import SnapshotService
from .urls import validate_url

logger = get_logger(__name__)

MAX_QUERY_LENGTH = 200
MAX_MATCHES = 1000

# Generic article markup for previewing pages that have no registered schema
PREVIEW_SCHEMA = SelectorSchema.model_validate({
    "list": "article, .news-item, .post",
    "title": "h1, h2, h3",
    "link": "a",
    "date": "time, .date",
    "summary": "p",
    "image": "img",
})
PREVIEW_LIMIT = 5


@dataclass
class FeedResult:
    site: SiteConfig
    items: list[ExtractedItem]
    xml: str


@dataclass
class BatchReport:
    """Outcome of one batch run."""
    updated: datetime
    results: list[dict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.get("ok"))

    def to_dict(self) -> dict:
        return {
            "updated": self.updated.isoformat(),
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.total - self.succeeded,
            "results": self.results,
        }


class FeedPipeline:
    """Wires the registry, extraction service and publisher together."""

    def __init__(
        self,
        registry: SiteRegistry,
        extraction: ExtractionService,
        publisher: Optional[FeedPublisher] = None,
        batch_concurrency: int = 3,
    ):
        self.registry = registry
        self.extraction = extraction
        self.publisher = publisher or FeedPublisher()
        self.batch_concurrency = batch_concurrency

    @property
    def snapshots(self) -> SnapshotService:
        return self.extraction.snapshots

    async def _publish(self, site: SiteConfig, self_url: Optional[str] = None) -> FeedResult:
        if site.selectors is None:
            raise InternalFault(
                f"Site {site.site_key} has no selector schema",
                code="site_misconfigured",
            )

        items = await self.extraction.extract(site.url, site.selectors)
        channel = FeedChannel(
            title=site.label or site.site_key,
            link=site.url,
            description=f"Generated from {site.url}",
            last_build_date=datetime.now(timezone.utc),
            items=items,
            self_url=self_url,
        )
        return FeedResult(site=site, items=items, xml=self.publisher.build(channel))

    async def build_feed(self, site_key: str, self_url: Optional[str] = None) -> str:
        """
        Build the RSS document for a registered site.

        The registry lookup happens first, so unknown or inactive sites fail
        with NotFoundError before anything is rendered. A failed touch is
        logged and does not fail the feed.
        """
        if not site_key or not site_key.strip():
            raise InputError("Missing site", code="missing_site")

        site = await self.registry.lookup(site_key.strip())
        if not site.active:
            raise NotFoundError(f"Site is inactive: {site.site_key}", code="site_inactive")

        result = await self._publish(site, self_url)

        try:
            await self.registry.touch(site.site_key)
        except ProxyError as e:
            logger.warning("registry_touch_failed", site_key=site.site_key, error=e.detail)

        logger.info("feed_built", site_key=site.site_key, items=len(result.items))
        return result.xml

    async def _batch_site(self, site: SiteConfig, semaphore: asyncio.Semaphore) -> dict:
        async with semaphore:
            outcome = {"siteKey": site.site_key, "url": site.url}
            try:
                result = await self._publish(site)
                await self.registry.touch(site.site_key)
            except ProxyError as e:
                logger.warning(
                    "batch_site_failed",
                    site_key=site.site_key,
                    error=e.code,
                    detail=e.detail,
                )
                return {**outcome, "ok": False, "error": e.code, "detail": e.detail}
            except Exception as e:
                logger.exception("batch_site_crashed", site_key=site.site_key)
                return {**outcome, "ok": False, "error": "internal_error", "detail": str(e)}

            logger.info("batch_site_ok", site_key=site.site_key, items=len(result.items))
            return {**outcome, "ok": True, "count": len(result.items)}

    async def run_batch(self) -> BatchReport:
        """
        Build every active site.

        One site's failure never aborts the others; each gets its own
        ok/error entry in registry order.
        """
        sites = await self.registry.list_active()
        logger.info("batch_started", sites=len(sites))

        semaphore = asyncio.Semaphore(self.batch_concurrency)
        results = await asyncio.gather(*(self._batch_site(s, semaphore) for s in sites))

        report = BatchReport(updated=datetime.now(timezone.utc), results=list(results))
        logger.info("batch_completed", total=report.total, succeeded=report.succeeded)
        return report

    async def extract(self, url: str, schema: SelectorSchema) -> list[ExtractedItem]:
        return await self.extraction.extract(url, schema)

    async def preview(self, url: str, limit: int = PREVIEW_LIMIT) -> dict:
        """
        First few articles of url, found with generic article markup.

        Goes through the same validation, render and extraction caches as
        extract(); items without a resolvable link are dropped.
        """
        items = await self.extraction.extract(url, PREVIEW_SCHEMA)
        return {
            "source": url.strip(),
            "updated": datetime.now(timezone.utc).isoformat(),
            "items": [item.to_dict() for item in items[:limit]],
        }

    async def snapshot(self, url: str) -> str:
        return await self.snapshots.snapshot(url)

    async def page_text(self, url: str) -> str:
        return html_to_text(await self.snapshots.snapshot(url))

    async def search_page(self, url: str, query: str) -> list[dict]:
        """Case-insensitive regex search over the page text."""
        validate_url(url)
        pattern = compile_query(query)
        text = await self.page_text(url)
        return search_text(pattern, text)


def html_to_text(html: str) -> str:
    """Visible text of a document, one non-empty line per block."""
    soup = BeautifulSoup(html or "", "lxml")
    for el in soup(["script", "style", "noscript", "template"]):
        el.decompose()
    root = soup.body or soup
    lines = (" ".join(line.split()) for line in root.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def compile_query(query: Optional[str]) -> re.Pattern:
    if not query or not query.strip():
        raise InputError("Missing q", code="missing_query")
    if len(query) > MAX_QUERY_LENGTH:
        raise InputError(f"q exceeds {MAX_QUERY_LENGTH} characters", code="invalid_query")
    try:
        return re.compile(query, re.IGNORECASE)
    except re.error as e:
        raise InputError(f"Invalid pattern: {e}", code="invalid_query") from e


def search_text(pattern: re.Pattern, text: str, limit: int = MAX_MATCHES) -> list[dict]:
    matches = []
    for match in pattern.finditer(text):
        if not match.group(0):
            continue
        matches.append({"index": match.start(), "match": match.group(0)})
        if len(matches) >= limit:
            break
    return matches


def build_pipeline(settings: Settings, renderer: Optional[Renderer] = None) -> FeedPipeline:
    """Construct the full pipeline from settings."""
    snapshots = SnapshotService(
        renderer=renderer or Renderer.from_settings(settings),
        cache=TTLCache(max_entries=settings.cache_max, ttl=settings.cache_ttl, name="render"),
        retry_policy=RetryPolicy.from_settings(settings),
    )
    extraction = ExtractionService(
        snapshots=snapshots,
        extractor=Extractor(
            max_items=settings.max_items_per_page,
            max_selector_length=settings.max_selector_length,
        ),
        cache=TTLCache(
            max_entries=settings.extract_cache_max,
            ttl=settings.extract_cache_ttl,
            name="extraction",
        ),
    )
    return FeedPipeline(
        registry=SiteRegistry.from_settings(settings),
        extraction=extraction,
        publisher=FeedPublisher(escaping=settings.feed_escaping),
        batch_concurrency=settings.batch_concurrency,
    )
