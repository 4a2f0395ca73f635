"""
Browser-driven page rendering with Playwright.

Every render launches its own driver, browser and context, so concurrent
renders never share mutable session state. The browser is closed on every
exit path, including navigation failures and the overall render deadline.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)
from playwright_stealth import Stealth

from .config import Settings, DEFAULT_USER_AGENT
from .errors import RenderError, RendererUnavailable
from .logging_conf import get_logger

logger = get_logger(__name__)

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

# net:: error markers that another attempt cannot fix, with their cause tag
PERMANENT_NET_ERRORS = {
    "ERR_NAME_NOT_RESOLVED": "dns",
    "ERR_NAME_RESOLUTION_FAILED": "dns",
    "ERR_INVALID_URL": "invalid_url",
    "ERR_UNKNOWN_URL_SCHEME": "invalid_url",
    "ERR_UNSAFE_PORT": "invalid_url",
    "ERR_ADDRESS_INVALID": "invalid_url",
    "ERR_CERT_": "tls",
    "ERR_SSL_PROTOCOL_ERROR": "tls",
    "ERR_BLOCKED_BY_CLIENT": "blocked",
    "ERR_BLOCKED_BY_RESPONSE": "blocked",
}

MISSING_BROWSER_MARKERS = ("Executable doesn't exist", "playwright install")


@dataclass(frozen=True)
class ConsentMatcher:
    """A known cookie-consent button and how long to wait for it."""
    name: str
    selector: str
    timeout_ms: int = 800


# Tried in order; vendor ids first, then localized button texts
DEFAULT_CONSENT_MATCHERS: tuple[ConsentMatcher, ...] = (
    ConsentMatcher("onetrust", "#onetrust-accept-btn-handler"),
    ConsentMatcher("cookiebot", "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll"),
    ConsentMatcher("didomi", "#didomi-notice-agree-button"),
    ConsentMatcher("quantcast", ".qc-cmp2-summary-buttons button[mode='primary']"),
    ConsentMatcher("accept-all-nl", "button:has-text('Alles accepteren')"),
    ConsentMatcher("accept-nl", "button:has-text('Accepteren')"),
    ConsentMatcher("agree-nl", "button:has-text('Akkoord')"),
    ConsentMatcher("accept-all-en", "button:has-text('Accept all')"),
    ConsentMatcher("agree-en", "button:has-text('I agree')"),
    ConsentMatcher("accept-en", "button:has-text('Accept')"),
)


@dataclass
class ConsentOutcome:
    """What happened while trying to dismiss a consent banner."""
    dismissed: bool = False
    matcher: Optional[str] = None
    attempts: int = 0
    elapsed_ms: int = 0
    budget_exhausted: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "dismissed": self.dismissed,
            "matcher": self.matcher,
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
            "budget_exhausted": self.budget_exhausted,
            "errors": self.errors,
        }


class ConsentDismisser:
    """
    Best-effort consent banner dismissal.

    Tries each matcher in priority order with its own click timeout, stops
    at the first successful click, after max_attempts matchers, or when the
    total budget is spent. Never raises for a missing banner.
    """

    def __init__(
        self,
        matchers: Sequence[ConsentMatcher] = DEFAULT_CONSENT_MATCHERS,
        max_attempts: Optional[int] = None,
        budget_ms: int = 4000,
    ):
        self.matchers = tuple(matchers)
        self.max_attempts = max_attempts or len(self.matchers)
        self.budget_ms = budget_ms

    async def dismiss(self, page: Page) -> ConsentOutcome:
        outcome = ConsentOutcome()
        started = time.monotonic()

        for matcher in self.matchers[: self.max_attempts]:
            remaining = self.budget_ms - int((time.monotonic() - started) * 1000)
            if remaining <= 0:
                outcome.budget_exhausted = True
                break

            outcome.attempts += 1
            try:
                await page.locator(matcher.selector).first.click(
                    timeout=min(matcher.timeout_ms, remaining)
                )
            except PlaywrightError as e:
                outcome.errors.append(f"{matcher.name}: {type(e).__name__}")
                continue

            outcome.dismissed = True
            outcome.matcher = matcher.name
            break

        outcome.elapsed_ms = int((time.monotonic() - started) * 1000)
        return outcome


@dataclass
class RenderOptions:
    """Browser session and navigation settings."""
    wait_until: str = "domcontentloaded"
    nav_timeout_ms: int = 25_000
    render_timeout_ms: int = 45_000
    settle_ms: int = 1_000
    locale: str = "nl-NL"
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1366
    viewport_height: int = 900
    humanize: bool = True
    dismiss_consent: bool = True
    headless: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenderOptions":
        return cls(
            wait_until=settings.wait_until,
            nav_timeout_ms=settings.nav_timeout_ms,
            render_timeout_ms=settings.render_timeout_ms,
            settle_ms=settings.settle_ms,
            locale=settings.browser_locale,
            user_agent=settings.browser_user_agent,
            viewport_width=settings.viewport_width,
            viewport_height=settings.viewport_height,
            humanize=settings.humanize,
            dismiss_consent=settings.dismiss_consent,
        )

    @property
    def accept_language(self) -> str:
        lang = self.locale.split("-")[0]
        return f"{self.locale},{lang};q=0.9,en-US;q=0.8,en;q=0.7"


def classify_navigation_error(exc: PlaywrightError) -> RenderError:
    """Turn a Playwright navigation error into a RenderError with a cause."""
    message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__

    if isinstance(exc, PlaywrightTimeoutError):
        return RenderError(message, cause="timeout", retryable=True)

    for marker, cause in PERMANENT_NET_ERRORS.items():
        if marker in message:
            return RenderError(message, cause=cause, retryable=False)

    if "net::" in message:
        return RenderError(message, cause="network", retryable=True)

    return RenderError(message, cause="navigation", retryable=True)


class Renderer:
    """
    Renders a URL to fully loaded HTML in an isolated browser session.

    The evasion flag is fixed at construction: when enabled, every context
    gets playwright-stealth patches; when disabled, none do.
    """

    def __init__(
        self,
        options: Optional[RenderOptions] = None,
        evasion: bool = False,
        consent: Optional[ConsentDismisser] = None,
    ):
        self.options = options or RenderOptions()
        self.evasion = evasion
        self._stealth: Optional[Stealth] = Stealth() if evasion else None
        self.consent = consent or ConsentDismisser()

        self.renders = 0
        self.failures = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "Renderer":
        return cls(
            options=RenderOptions.from_settings(settings),
            evasion=settings.evasion,
        )

    async def render(self, url: str) -> str:
        """
        Render url and return the serialized document HTML.

        Raises:
            RendererUnavailable: the browser cannot be started at all
            RenderError: launch, navigation, network or deadline failure
        """
        started = time.monotonic()
        logger.info(
            "render_started",
            url=url,
            wait_until=self.options.wait_until,
            evasion=self.evasion,
        )

        try:
            html = await asyncio.wait_for(
                self._render(url),
                timeout=self.options.render_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            self.failures += 1
            logger.warning("render_deadline_exceeded", url=url)
            raise RenderError(
                f"Render exceeded {self.options.render_timeout_ms} ms",
                cause="timeout",
            ) from None
        except RenderError as e:
            self.failures += 1
            logger.warning(
                "render_failed",
                url=url,
                cause=e.cause,
                retryable=e.retryable,
                error=e.detail,
            )
            raise

        self.renders += 1
        logger.info(
            "render_completed",
            url=url,
            bytes=len(html),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return html

    async def _render(self, url: str) -> str:
        try:
            playwright = await async_playwright().start()
        except Exception as e:
            raise RendererUnavailable(f"Playwright driver failed to start: {e}") from e

        try:
            browser = await self._launch(playwright)
            try:
                return await self._load(browser, url)
            finally:
                await self._close(browser)
        finally:
            await playwright.stop()

    async def _launch(self, playwright: Playwright) -> Browser:
        try:
            return await playwright.chromium.launch(
                headless=self.options.headless,
                args=LAUNCH_ARGS,
            )
        except PlaywrightError as e:
            message = str(e)
            if any(marker in message for marker in MISSING_BROWSER_MARKERS):
                raise RendererUnavailable("Chromium is not installed") from e
            raise RenderError(f"Browser launch failed: {message}", cause="launch") from e

    async def _open_page(self, browser: Browser) -> Page:
        """Fresh context and page. A closed or crashed browser surfaces here."""
        opts = self.options
        try:
            context = await browser.new_context(
                user_agent=opts.user_agent,
                locale=opts.locale,
                viewport={"width": opts.viewport_width, "height": opts.viewport_height},
                extra_http_headers={
                    "Accept-Language": opts.accept_language,
                    "Accept": (
                        "text/html,application/xhtml+xml,application/xml;q=0.9,"
                        "image/avif,image/webp,*/*;q=0.8"
                    ),
                    "Cache-Control": "no-cache",
                    "Pragma": "no-cache",
                },
            )
            if self._stealth is not None:
                await self._stealth.apply_stealth_async(context)
            return await context.new_page()
        except PlaywrightError as e:
            raise RenderError(f"Browser session failed: {e}", cause="session") from e

    async def _load(self, browser: Browser, url: str) -> str:
        opts = self.options
        page = await self._open_page(browser)

        try:
            response = await page.goto(
                url,
                wait_until=opts.wait_until,
                timeout=opts.nav_timeout_ms,
            )
        except PlaywrightError as e:
            raise classify_navigation_error(e) from e

        if response is not None:
            logger.debug("render_navigated", url=url, status=response.status)

        if opts.humanize:
            await self._humanize(page)

        if opts.dismiss_consent:
            outcome = await self.consent.dismiss(page)
            if outcome.dismissed:
                logger.info("consent_dismissed", url=url, **outcome.to_dict())
            else:
                logger.debug("consent_not_dismissed", url=url, **outcome.to_dict())

        try:
            if opts.settle_ms:
                await page.wait_for_timeout(opts.settle_ms)
            return await page.content()
        except PlaywrightError as e:
            raise RenderError(f"Could not serialize page: {e}", cause="content") from e

    async def _humanize(self, page: Page) -> None:
        """Move the pointer and scroll a little, ignoring any failure."""
        width = self.options.viewport_width
        height = self.options.viewport_height
        try:
            for step in range(1, 4):
                await page.mouse.move(
                    width * step / 4 + random.uniform(-20, 20),
                    height * step / 5 + random.uniform(-20, 20),
                    steps=5,
                )
            await page.mouse.wheel(0, height // 2)
            await page.wait_for_timeout(150)
            await page.mouse.wheel(0, -(height // 4))
        except PlaywrightError as e:
            logger.debug("humanize_failed", error=str(e))

    async def _close(self, browser: Browser) -> None:
        try:
            await browser.close()
        except PlaywrightError as e:
            logger.debug("browser_close_failed", error=str(e))

    def stats(self) -> dict:
        return {"renders": self.renders, "failures": self.failures}
