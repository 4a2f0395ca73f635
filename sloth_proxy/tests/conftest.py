"""
Shared stubs for pipeline tests.

The browser and the registry backend are replaced by in-memory doubles so
the tests never touch the network.
"""

import asyncio
from datetime import datetime
from typing import Optional

import pytest

from sloth_proxy.cache import TTLCache
from sloth_proxy.errors import RegistryError
from sloth_proxy.extraction import ExtractionService
from sloth_proxy.extractor import Extractor
from sloth_proxy.feed import FeedPublisher
from sloth_proxy.pipeline import FeedPipeline
from sloth_proxy.registry import SiteConfig, SiteRegistry
from sloth_proxy.retry import RetryPolicy
from sloth_proxy.snapshot import SnapshotService


ARTICLE_PAGE = """
<html><body>
  <div class="item">
    <h2>First story</h2>
    <a href="/first">read</a>
    <time datetime="2024-03-05T10:00:00Z">5 March</time>
    <p class="intro">Intro one</p>
    <img src="/img/one.jpg">
  </div>
  <div class="item">
    <h2>Second story</h2>
    <a href="https://other.example.org/second">read</a>
  </div>
</body></html>
"""


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubRenderer:
    """Renderer double: serves canned HTML and records calls."""

    def __init__(self, pages: Optional[dict] = None, errors: Optional[list] = None, default: str = ARTICLE_PAGE):
        self.pages = pages or {}
        self.errors = list(errors or [])
        self.default = default
        self.calls: list[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def render(self, url: str) -> str:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)
        return self.pages.get(url, self.default)


class StubStore:
    """Site store double."""

    def __init__(self, name: str, sites: Optional[list] = None, fail: bool = False, touch_fail: tuple = ()):
        self.name = name
        self.sites = sites or []
        self.fail = fail
        self.touch_fail = set(touch_fail)
        self.touched: list[str] = []

    async def fetch_all(self) -> list[SiteConfig]:
        if self.fail:
            raise RegistryError(f"{self.name} unreachable")
        return [SiteConfig.model_validate(s) for s in self.sites]

    async def touch(self, site_key: str, when: datetime) -> None:
        if site_key in self.touch_fail:
            raise RegistryError(f"touch rejected for {site_key}")
        self.touched.append(site_key)


def make_site(key: str, url: Optional[str] = None, active: bool = True, selectors: Optional[dict] = None) -> dict:
    return {
        "siteKey": key,
        "label": f"Label {key}",
        "url": url or f"https://{key}.example.com/news",
        "active": active,
        "selectors": selectors if selectors is not None else {
            "list": ".item",
            "title": "h2",
            "link": "a",
            "date": "time",
            "summary": ".intro",
            "image": "img",
        },
    }


def make_pipeline(
    renderer: StubRenderer,
    store: StubStore,
    clock: Optional[FakeClock] = None,
    escaping: str = "full",
) -> FeedPipeline:
    clock = clock or FakeClock()
    snapshots = SnapshotService(
        renderer=renderer,
        cache=TTLCache(max_entries=50, ttl=300.0, name="render", clock=clock),
        retry_policy=RetryPolicy(retries=2, min_delay=0, max_delay=0),
    )
    extraction = ExtractionService(
        snapshots=snapshots,
        extractor=Extractor(),
        cache=TTLCache(max_entries=50, ttl=120.0, name="extraction", clock=clock),
    )
    return FeedPipeline(
        registry=SiteRegistry(remote=store),
        extraction=extraction,
        publisher=FeedPublisher(escaping=escaping),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def renderer():
    return StubRenderer()
