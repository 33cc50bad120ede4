"""
sitefetch - FastAPI application exposing cached, relay-raced fetches
"""
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request

from sitefetch.cache import CacheTier
from sitefetch.client import ContentClient, build_content_client
from sitefetch.errors import CoalescedFetchTimeout, FetchError, SitemapNotFound, SitemapParseError
from sitefetch.sitemap import SitemapCrawler, is_sitemap_url
from config.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("sitefetch.main")

APP_VERSION = "v0.1.0"
APP_NAME = "sitefetch"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One client per process, closed on shutdown.
    client = build_content_client(settings)
    if client.startup_error:
        logger.error(f"Durable cache disabled: {client.startup_error}")
    app.state.client = client
    try:
        yield
    finally:
        client.close()


app = FastAPI(
    title=APP_NAME,
    description="Resilient content fetching with relay racing and tiered caching",
    version=APP_VERSION,
    lifespan=lifespan,
)


def get_client(request: Request) -> ContentClient:
    return request.app.state.client


def _parse_tier(tier: str) -> CacheTier:
    try:
        return CacheTier(tier)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown cache tier: {tier}")


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {"name": APP_NAME, "version": APP_VERSION}


@app.get("/fetch")
def fetch_resource(
    url: str = Query(..., min_length=8, description="Resource URL"),
    tier: str = Query("ephemeral", description="Cache tier: ephemeral, durable or none"),
    refresh: bool = Query(False, description="Bypass the cache"),
    client: ContentClient = Depends(get_client),
):
    """Fetch a URL through the fastest route, using the chosen cache tier."""
    cache_tier = _parse_tier(tier)
    try:
        result = client.fetch_text(url, tier=cache_tier, force_refresh=refresh)
    except CoalescedFetchTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return result.to_dict()


@app.get("/sitemap")
def crawl_sitemap(
    url: str = Query(..., min_length=8, description="Sitemap URL, sitemap index URL or site root"),
    max_entries: Optional[int] = Query(None, ge=1, description="Max entries to return"),
    filter: Optional[List[str]] = Query(None, description="Keep URLs containing any of these"),
    client: ContentClient = Depends(get_client),
):
    """
    Fetch and parse a sitemap or sitemap index.

    A site root is resolved by trying the conventional sitemap locations.
    """
    crawler = SitemapCrawler(client)
    options = {
        "max_entries": max_entries,
        "filter_patterns": filter,
        "concurrency": settings.fetch_concurrency,
    }
    try:
        if is_sitemap_url(url):
            sitemap_url, document = url, crawler.crawl(url, **options)
        else:
            sitemap_url, document = crawler.crawl_site(url, **options)
    except SitemapNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CoalescedFetchTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except SitemapParseError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "url": url,
        "sitemap_url": sitemap_url,
        "entries": [entry.to_dict() for entry in document.entries],
        "entry_count": len(document.entries),
        "total_count": document.total_count,
        "child_sitemaps": document.child_sitemaps,
    }


@app.get("/cache/stats")
def cache_stats(client: ContentClient = Depends(get_client)):
    """Get cache statistics."""
    return client.get_stats()


@app.post("/cache/clear")
def cache_clear(client: ContentClient = Depends(get_client)):
    """Clear both cache tiers."""
    return {"cleared": client.clear_caches()}
