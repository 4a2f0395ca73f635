"""
Configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
Durations are configured in milliseconds and exposed in seconds through
properties.
"""

from typing import Optional
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


WAIT_STRATEGIES = ("load", "domcontentloaded", "networkidle")
ESCAPING_MODES = ("full", "minimal")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    port: int = Field(8080, description="HTTP server port")
    allow_origin: str = Field("*", description="CORS allowed origin(s), comma-separated")
    rate_per_min: int = Field(60, ge=0, description="Requests per client per minute (0 disables)")
    cron_secret: Optional[str] = Field(None, description="Shared secret for the batch trigger")

    # Render cache
    cache_ttl_ms: int = Field(300_000, gt=0, description="Rendered HTML cache TTL (ms)")
    cache_max: int = Field(200, gt=0, description="Rendered HTML cache capacity")

    # Extraction cache
    extract_cache_ttl_ms: int = Field(120_000, gt=0, description="Extraction cache TTL (ms)")
    extract_cache_max: int = Field(200, gt=0, description="Extraction cache capacity")

    # Renderer
    nav_timeout_ms: int = Field(25_000, gt=0, description="Navigation timeout (ms)")
    render_timeout_ms: int = Field(45_000, gt=0, description="Overall render deadline (ms)")
    settle_ms: int = Field(1_000, ge=0, description="Delay after load before serializing (ms)")
    wait_until: str = Field("domcontentloaded", description="Navigation wait strategy")
    browser_locale: str = Field("nl-NL", description="Browser context locale")
    browser_user_agent: str = Field(DEFAULT_USER_AGENT, description="Browser user agent")
    viewport_width: int = Field(1366, gt=0, description="Viewport width")
    viewport_height: int = Field(900, gt=0, description="Viewport height")
    evasion: bool = Field(False, description="Apply playwright-stealth to browser contexts")
    humanize: bool = Field(True, description="Move pointer and scroll after load")
    dismiss_consent: bool = Field(True, description="Try to dismiss cookie-consent banners")

    # Retry policy
    render_retries: int = Field(2, ge=0, description="Retries after the first render attempt")
    retry_min_delay_ms: int = Field(500, ge=0, description="Minimum backoff between attempts (ms)")
    retry_max_delay_ms: int = Field(1_500, ge=0, description="Maximum backoff between attempts (ms)")

    # Extraction
    max_selector_length: int = Field(512, gt=0, description="Longest accepted CSS selector")
    max_items_per_page: int = Field(500, gt=0, description="Max list matches considered per page")

    # Feed
    feed_escaping: str = Field("full", description="XML text escaping: full or minimal")

    # Site registry
    supabase_url: Optional[str] = Field(None, description="Supabase project URL")
    supabase_anon_key: Optional[str] = Field(None, description="Supabase anon key (reads)")
    supabase_service_key: Optional[str] = Field(None, description="Supabase service key (writes)")
    sites_table: str = Field("sites", description="Registry table name")
    sites_file: str = Field("configs/sites.json", description="Static local site list")
    registry_timeout: float = Field(10.0, gt=0, description="Registry HTTP timeout (seconds)")

    # Batch / scheduler
    batch_concurrency: int = Field(3, gt=0, description="Concurrent sites during a batch run")
    enable_scheduler: bool = Field(False, description="Enable built-in batch scheduler")
    schedule_hours: str = Field("6,18", description="Hours to run at (UTC), comma-separated")

    # Logging
    log_level: str = Field("INFO", description="Log level")
    log_json: bool = Field(False, description="Output logs as JSON")

    @field_validator("wait_until")
    @classmethod
    def validate_wait_until(cls, v: str) -> str:
        """Only the three Playwright load states are accepted."""
        v = v.strip().lower()
        if v not in WAIT_STRATEGIES:
            raise ValueError(f"wait_until must be one of {', '.join(WAIT_STRATEGIES)}")
        return v

    @field_validator("feed_escaping")
    @classmethod
    def validate_feed_escaping(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ESCAPING_MODES:
            raise ValueError(f"feed_escaping must be one of {', '.join(ESCAPING_MODES)}")
        return v

    @field_validator("schedule_hours")
    @classmethod
    def parse_schedule_hours(cls, v: str) -> str:
        """Validate schedule hours format."""
        try:
            hours = [int(h.strip()) for h in v.split(",")]
            for h in hours:
                if not 0 <= h <= 23:
                    raise ValueError(f"Hour {h} not in range 0-23")
        except Exception as e:
            raise ValueError(f"Invalid schedule_hours format: {e}")
        return v

    @property
    def schedule_hours_list(self) -> list[int]:
        """Get schedule hours as a list of integers."""
        return [int(h.strip()) for h in self.schedule_hours.split(",")]

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.allow_origin.split(",") if o.strip()]

    @property
    def cache_ttl(self) -> float:
        return self.cache_ttl_ms / 1000

    @property
    def extract_cache_ttl(self) -> float:
        return self.extract_cache_ttl_ms / 1000

    @property
    def retry_min_delay(self) -> float:
        return self.retry_min_delay_ms / 1000

    @property
    def retry_max_delay(self) -> float:
        return max(self.retry_max_delay_ms, self.retry_min_delay_ms) / 1000

    @property
    def has_remote_registry(self) -> bool:
        """Check if Supabase credentials are present."""
        return bool(self.supabase_url and self.supabase_anon_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Clear cache to allow re-reading settings (useful for tests)
def clear_settings_cache():
    """Clear the settings cache."""
    get_settings.cache_clear()
