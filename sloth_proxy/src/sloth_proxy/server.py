"""
FastAPI server exposing the render/extract/publish pipeline.

Provides:
- Health and registry status endpoints
- Snapshot, page text and search over rendered pages
- Schema-driven extraction and per-site RSS feeds
- A JSON article preview for unregistered pages
- Site list reload and the batch (cron) trigger

Handlers stay thin: they call pipeline functions and let the typed
errors from errors.py become responses in one place.
"""

import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel

from .config import Settings, get_settings
from .errors import AuthError, ProxyError, RateLimited
from .extractor import SelectorSchema
from .logging_conf import get_logger, request_context, setup_logging
from .pipeline import FeedPipeline, build_pipeline
from .ratelimit import RateLimiter
from .scheduler import BatchScheduler

logger = get_logger(__name__)

RATE_EXEMPT_PATHS = {"/health"}


class ExtractRequest(BaseModel):
    url: str
    selectors: SelectorSchema


def verify_cron_secret(provided: Optional[str], expected: Optional[str]) -> None:
    """
    Constant-time secret check. An unset expected secret rejects everything.

    Raises:
        AuthError: secret missing or mismatched
    """
    if not expected or not provided:
        raise AuthError("Invalid or missing secret")
    if not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Invalid or missing secret")


def get_pipeline(request: Request) -> FeedPipeline:
    return request.app.state.pipeline


def create_app(
    pipeline: Optional[FeedPipeline] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the ASGI application.

    Args:
        pipeline: Pre-built pipeline (tests inject stubs); built from
            settings at startup when omitted
        settings: Settings to use instead of the cached environment settings
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging(
            level=settings.log_level,
            json_output=settings.log_json,
        )
        logger.info("server_starting", wait_until=settings.wait_until, evasion=settings.evasion)

        app.state.pipeline = pipeline or build_pipeline(settings)

        try:
            await app.state.pipeline.registry.reload()
        except ProxyError as e:
            logger.warning("registry_initial_load_failed", error=e.detail)

        scheduler = None
        if settings.enable_scheduler:
            scheduler = BatchScheduler(app.state.pipeline, settings.schedule_hours_list)
            scheduler.start()

        yield

        if scheduler:
            scheduler.stop()

        logger.info("server_stopped")

    app = FastAPI(
        title="Sloth Proxy",
        description="Renders web pages, extracts articles and republishes them as RSS",
        version="2.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(limit=settings.rate_per_min)

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept"],
        max_age=600,
    )

    @app.middleware("http")
    async def rate_limit_and_log(request: Request, call_next):
        with request_context(request_id=uuid.uuid4().hex[:12]):
            started = time.monotonic()

            if request.url.path not in RATE_EXEMPT_PATHS:
                client = request.client.host if request.client else "unknown"
                decision = app.state.rate_limiter.hit(client)
                if not decision.allowed:
                    error = RateLimited("Too many requests", retry_after=decision.retry_after)
                    logger.warning("rate_limited", client=client, path=request.url.path)
                    return JSONResponse(
                        error.to_dict(),
                        status_code=error.status_code,
                        headers={"Retry-After": str(error.retry_after)},
                    )

            response = await call_next(request)
            logger.info(
                "request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return response

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed", path=request.url.path, error=exc.code, detail=exc.detail)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg')}" for e in errors
        ) or "Invalid request"
        return JSONResponse({"error": "invalid_request", "detail": detail}, status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return JSONResponse(
            {"error": "internal_error", "detail": str(exc)},
            status_code=500,
        )

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        pipeline: Optional[FeedPipeline] = getattr(request.app.state, "pipeline", None)
        cache_stats = {}
        if pipeline is not None:
            cache_stats = {
                "render": pipeline.snapshots.stats(),
                "extraction": pipeline.extraction.cache.stats(),
            }
        return {
            "ok": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cacheStats": cache_stats,
        }

    @app.get("/status")
    async def status(pipeline: FeedPipeline = Depends(get_pipeline)):
        """Registry status: every site with its activity and last build."""
        sites = await pipeline.registry.list_all()
        return {"sites": [s.summary() for s in sites]}

    @app.get("/snapshot", response_class=HTMLResponse)
    async def snapshot(url: Optional[str] = None, pipeline: FeedPipeline = Depends(get_pipeline)):
        """Rendered HTML of url."""
        html = await pipeline.snapshot(url)
        return HTMLResponse(html, headers={"Cache-Control": "public, max-age=60"})

    @app.get("/page")
    async def page_text(url: Optional[str] = None, pipeline: FeedPipeline = Depends(get_pipeline)):
        text = await pipeline.page_text(url)
        return {"url": url, "text": text}

    @app.get("/search")
    async def search(
        url: Optional[str] = None,
        q: Optional[str] = None,
        pipeline: FeedPipeline = Depends(get_pipeline),
    ):
        matches = await pipeline.search_page(url, q)
        return {"url": url, "query": q, "matches": matches}

    @app.post("/extract")
    async def extract(body: ExtractRequest, pipeline: FeedPipeline = Depends(get_pipeline)):
        """Extract items from url with an ad-hoc selector schema."""
        items = await pipeline.extract(body.url, body.selectors)
        return {
            "url": body.url,
            "count": len(items),
            "items": [item.to_dict() for item in items],
        }

    @app.get("/feed")
    async def feed_preview(url: Optional[str] = None, pipeline: FeedPipeline = Depends(get_pipeline)):
        """JSON preview of the first articles on any page."""
        return await pipeline.preview(url)

    @app.get("/rss")
    async def rss(
        request: Request,
        site: Optional[str] = None,
        pipeline: FeedPipeline = Depends(get_pipeline),
    ):
        """RSS feed for a registered site."""
        xml = await pipeline.build_feed(site, self_url=str(request.url))
        return Response(content=xml, media_type="application/rss+xml; charset=utf-8")

    @app.get("/sites")
    async def list_sites(pipeline: FeedPipeline = Depends(get_pipeline)):
        sites = await pipeline.registry.list_all()
        return {"count": len(sites), "sites": [s.to_dict() for s in sites]}

    @app.post("/sites/reload")
    async def reload_sites(pipeline: FeedPipeline = Depends(get_pipeline)):
        count = await pipeline.registry.reload()
        return {"ok": True, "count": count, "source": pipeline.registry.source}

    @app.post("/cron")
    async def cron(
        request: Request,
        secret: Optional[str] = None,
        pipeline: FeedPipeline = Depends(get_pipeline),
    ):
        """Rebuild every active site; failures are reported per site."""
        verify_cron_secret(secret, request.app.state.settings.cron_secret)
        report = await pipeline.run_batch()
        return report.to_dict()

    return app


app = create_app()


def run_server(
    host: str = "0.0.0.0",
    port: Optional[int] = None,
    with_scheduler: bool = False,
):
    """
    Run the FastAPI server.

    Args:
        host: Host to bind to
        port: Port to bind to (defaults to settings.port)
        with_scheduler: Whether to enable the batch scheduler
    """
    import uvicorn

    settings = get_settings()
    if with_scheduler:
        settings = settings.model_copy(update={"enable_scheduler": True})

    port = port or settings.port

    logger.info("starting_server", host=host, port=port)

    uvicorn.run(
        create_app(settings=settings),
        host=host,
        port=port,
        log_level="warning",
    )
