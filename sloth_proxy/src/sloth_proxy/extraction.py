"""
Extraction service: snapshot + extractor behind a (url, schema) cache.

The extraction cache lives shorter than the render cache so that schema
edits show up before a full re-render would be due.
"""

import hashlib
import json
from typing import Optional

from .cache import SingleFlight, TTLCache
from .errors import InternalFault, ProxyError
from .extractor import Extractor, ExtractedItem, SelectorSchema, check_schema
from .logging_conf import get_logger
from .snapshot import SnapshotService
from .urls import normalize_url, validate_url

logger = get_logger(__name__)


def extraction_cache_key(url: str, schema: SelectorSchema) -> str:
    """Deterministic key for a (url, schema) pair."""
    payload = json.dumps(
        {"url": normalize_url(url), "selectors": schema.selectors()},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ExtractionService:
    """Returns extracted items for a URL and selector schema."""

    def __init__(
        self,
        snapshots: SnapshotService,
        extractor: Optional[Extractor] = None,
        cache: Optional[TTLCache[tuple[ExtractedItem, ...]]] = None,
    ):
        self.snapshots = snapshots
        self.extractor = extractor or Extractor()
        self.cache = cache if cache is not None else TTLCache(ttl=120.0, name="extraction")
        self.flights = SingleFlight(name="extraction")

    async def extract(self, url: str, schema: SelectorSchema) -> list[ExtractedItem]:
        """
        Extract items from the rendered page at url.

        Raises:
            InputError: invalid url or schema (before any render)
            UpstreamFailure / ServiceUnavailable: from the snapshot stage
            InternalFault: unexpected extractor failure
        """
        target = validate_url(url)
        check_schema(schema, self.extractor.max_selector_length)

        key = extraction_cache_key(target, schema)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("extraction_cache_hit", url=target)
            return list(cached)

        items = await self.flights.do(key, lambda: self._extract_and_store(key, target, schema))
        return list(items)

    async def _extract_and_store(
        self,
        key: str,
        url: str,
        schema: SelectorSchema,
    ) -> tuple[ExtractedItem, ...]:
        html = await self.snapshots.snapshot(url)

        try:
            items = tuple(self.extractor.extract(html, schema, url))
        except ProxyError:
            raise
        except Exception as e:
            logger.exception("extraction_failed", url=url)
            raise InternalFault(f"Extraction failed: {e}", code="extraction_failed") from e

        logger.info("extraction_completed", url=url, items=len(items))
        self.cache.set(key, items)
        return items
