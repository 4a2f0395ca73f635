"""
Site registry: siteKey -> target URL, selector schema, label, activity.

Remote data comes from a Supabase (PostgREST) table; a static JSON file
serves as fallback and as a source of selectors for remote rows without
them. The registry holds one immutable snapshot that reload() replaces
as a whole, never partially.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import NotFoundError, RegistryError
from .extractor import SelectorSchema
from .logging_conf import get_logger

logger = get_logger(__name__)

REMOTE_COLUMNS = "siteKey,label,url,active,lastUpdated,selectors"


class SiteConfig(BaseModel):
    """One registered site."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    site_key: str = Field(..., alias="siteKey", min_length=1)
    label: str = ""
    url: str
    selectors: Optional[SelectorSchema] = None
    active: bool = True
    last_updated: Optional[datetime] = Field(None, alias="lastUpdated")

    def summary(self) -> dict:
        """Public status fields."""
        return {
            "siteKey": self.site_key,
            "label": self.label,
            "url": self.url,
            "active": self.active,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

    def to_dict(self) -> dict:
        data = self.summary()
        data["selectors"] = self.selectors.selectors() if self.selectors else None
        return data


class SiteStore(Protocol):
    name: str

    async def fetch_all(self) -> list[SiteConfig]: ...

    async def touch(self, site_key: str, when: datetime) -> None: ...


def _parse_rows(rows: list[dict], source: str) -> list[SiteConfig]:
    """Validate raw rows, skipping (and logging) malformed ones."""
    sites = []
    for row in rows:
        try:
            sites.append(SiteConfig.model_validate(row))
        except ValidationError as e:
            logger.warning(
                "registry_row_invalid",
                source=source,
                site_key=row.get("siteKey") if isinstance(row, dict) else None,
                error=str(e).splitlines()[0],
            )
    return sites


class SupabaseSiteStore:
    """Sites table accessed through the Supabase REST API."""

    name = "supabase"

    def __init__(
        self,
        url: str,
        anon_key: str,
        service_key: Optional[str] = None,
        table: str = "sites",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = f"{url.rstrip('/')}/rest/v1/{table}"
        self.anon_key = anon_key
        self.service_key = service_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self, key: str) -> dict:
        return {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def fetch_all(self) -> list[SiteConfig]:
        async with self._client() as client:
            response = await client.get(
                self.endpoint,
                params={"select": REMOTE_COLUMNS},
                headers=self._headers(self.anon_key),
            )
            response.raise_for_status()

        rows = response.json()
        if not isinstance(rows, list):
            raise RegistryError("Unexpected registry response shape")
        return _parse_rows(rows, self.name)

    async def touch(self, site_key: str, when: datetime) -> None:
        if not self.service_key:
            logger.debug("registry_touch_skipped", site_key=site_key, reason="no_service_key")
            return

        async with self._client() as client:
            response = await client.patch(
                self.endpoint,
                params={"siteKey": f"eq.{site_key}"},
                json={"lastUpdated": when.isoformat()},
                headers={
                    **self._headers(self.service_key),
                    "Content-Type": "application/json",
                    "Prefer": "return=minimal",
                },
            )
            response.raise_for_status()


class LocalSiteStore:
    """
    Static site list from a JSON file.

    Accepts either a list of site objects or a mapping of url -> selectors
    (sites then get their url as key and label).
    """

    name = "local"

    def __init__(self, path: Path):
        self.path = Path(path)

    def _load_rows(self) -> list[dict]:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)

        if isinstance(data, dict) and isinstance(data.get("sites"), list):
            return data["sites"]
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return [
                {"siteKey": url, "label": url, "url": url, "selectors": selectors}
                for url, selectors in data.items()
            ]
        raise RegistryError(f"Unsupported site list format in {self.path}")

    async def fetch_all(self) -> list[SiteConfig]:
        return _parse_rows(self._load_rows(), self.name)

    async def touch(self, site_key: str, when: datetime) -> None:
        # The file is never rewritten; the registry snapshot carries the time
        return None


@dataclass(frozen=True)
class RegistrySnapshot:
    sites: dict[str, SiteConfig]
    source: str
    loaded_at: datetime


class SiteRegistry:
    """
    In-memory view of the registered sites.

    Remote data wins when available; the local list is the fallback and
    fills in selectors missing from remote rows.
    """

    def __init__(
        self,
        remote: Optional[SiteStore] = None,
        local: Optional[SiteStore] = None,
    ):
        self.remote = remote
        self.local = local
        self._snapshot: Optional[RegistrySnapshot] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SiteRegistry":
        remote = None
        if settings.has_remote_registry:
            remote = SupabaseSiteStore(
                url=settings.supabase_url,
                anon_key=settings.supabase_anon_key,
                service_key=settings.supabase_service_key,
                table=settings.sites_table,
                timeout=settings.registry_timeout,
            )
        local_path = Path(settings.sites_file)
        local = LocalSiteStore(local_path) if local_path.exists() else None
        return cls(remote=remote, local=local)

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def source(self) -> Optional[str]:
        return self._snapshot.source if self._snapshot else None

    async def _fetch(self, store: Optional[SiteStore]) -> Optional[list[SiteConfig]]:
        if store is None:
            return None
        try:
            return await store.fetch_all()
        except (httpx.HTTPError, OSError, ValueError, RegistryError) as e:
            logger.warning("registry_store_failed", store=store.name, error=str(e))
            return None

    async def reload(self) -> int:
        """
        Load a fresh snapshot and swap it in.

        Raises:
            RegistryError: no store could be read; the previous snapshot
                stays in place
        """
        remote_sites = await self._fetch(self.remote)
        local_sites = await self._fetch(self.local)

        if remote_sites is not None:
            sites = self._merge(remote_sites, local_sites or [])
            source = self.remote.name
        elif local_sites is not None:
            sites = local_sites
            source = self.local.name
        else:
            raise RegistryError("No site registry is reachable")

        self._snapshot = RegistrySnapshot(
            sites={s.site_key: s for s in sites},
            source=source,
            loaded_at=datetime.now(timezone.utc),
        )
        logger.info("registry_loaded", source=source, sites=len(sites))
        return len(sites)

    @staticmethod
    def _merge(remote: list[SiteConfig], local: list[SiteConfig]) -> list[SiteConfig]:
        by_key = {s.site_key: s for s in local}
        by_url = {s.url: s for s in local}

        merged = []
        for site in remote:
            if site.selectors is None:
                fallback = by_key.get(site.site_key) or by_url.get(site.url)
                if fallback is not None and fallback.selectors is not None:
                    site = site.model_copy(update={"selectors": fallback.selectors})
            merged.append(site)
        return merged

    async def _current(self) -> RegistrySnapshot:
        if self._snapshot is None:
            await self.reload()
        return self._snapshot

    async def lookup(self, site_key: str) -> SiteConfig:
        """
        Raises:
            NotFoundError: unknown site key
        """
        snapshot = await self._current()
        site = snapshot.sites.get(site_key)
        if site is None:
            raise NotFoundError(f"Unknown site: {site_key}", code="unknown_site")
        return site

    async def list_all(self) -> list[SiteConfig]:
        snapshot = await self._current()
        return list(snapshot.sites.values())

    async def list_active(self) -> list[SiteConfig]:
        return [s for s in await self.list_all() if s.active]

    async def touch(self, site_key: str) -> datetime:
        """
        Record a successful build for site_key.

        Raises:
            NotFoundError: unknown site key
            RegistryError: the backing store rejected the update
        """
        await self.lookup(site_key)
        now = datetime.now(timezone.utc)

        store = self.remote if self.source == getattr(self.remote, "name", None) else self.local
        if store is not None:
            try:
                await store.touch(site_key, now)
            except (httpx.HTTPError, OSError) as e:
                raise RegistryError(f"Touch failed for {site_key}: {e}") from e

        # A reload may have swapped the snapshot during the store write
        snapshot = self._snapshot
        current = snapshot.sites.get(site_key)
        if current is None:
            logger.info("registry_touch_site_gone", site=site_key)
            return now

        sites = dict(snapshot.sites)
        sites[site_key] = current.model_copy(update={"last_updated": now})
        self._snapshot = RegistrySnapshot(sites=sites, source=snapshot.source, loaded_at=snapshot.loaded_at)
        return now
