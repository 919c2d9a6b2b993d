"""
metascry — FastAPI backend

Endpoints:
    GET    /api/health          — health check
    POST   /api/metadata        — resolve metadata for a URL
    POST   /api/metadata/upload — resolve metadata from uploaded bytes
    GET    /api/media-size      — resource size without downloading it
    DELETE /api/cache           — clear the metadata cache
    POST   /api/data/clear      — clear the cache and the range block list
    GET    /api/data/stats      — cache and range block list statistics

Components are built once in the lifespan handler and shared through
app.state; routes reach them via the get_resolver dependency.
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.cache import MetadataCache, RecordStore
from core.errors import TransportError
from core.fetcher import FetchOrchestrator
from core.range_registry import RangeCapabilityRegistry
from core.resolver import MetadataResolver
from core.stealth_decoder import StealthChannelDecoder
from web.config import settings

logging.basicConfig(
    level  = settings.log_level.upper(),
    format = "%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------

def build_resolver(client: httpx.AsyncClient, store: RecordStore) -> MetadataResolver:
    """Assemble the resolver stack from settings."""
    registry = RangeCapabilityRegistry(
        exempt_domains = settings.range_exempt_domains,
        store          = store,
    )
    orchestrator = FetchOrchestrator(
        client           = client,
        registry         = registry,
        stealth_decoder  = StealthChannelDecoder(min_pixels=settings.stealth_min_pixels),
        probe_bytes      = settings.range_probe_bytes,
        escalation_bytes = settings.range_escalation_bytes,
        range_timeout    = settings.range_timeout,
        full_timeout     = settings.full_fetch_timeout,
        keywords         = settings.metadata_keywords,
    )
    cache = MetadataCache(store, limit=settings.cache_limit)
    return MetadataResolver(cache, orchestrator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = RecordStore(settings.cache_path)
    # Per-request timeouts are enforced by the orchestrator
    client = httpx.AsyncClient(
        follow_redirects = True,
        timeout          = None,
        headers          = {"User-Agent": settings.user_agent},
    )
    app.state.resolver = build_resolver(client, store)
    logger.info("[APP] Cache at %s (limit %d)", settings.cache_path, settings.cache_limit)
    try:
        yield
    finally:
        app.state.resolver.cache.flush()
        await client.aclose()
        store.close()


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = FastAPI(
    title       = settings.app_title,
    description = "Extracts generation metadata from remote images and model files.",
    version     = settings.app_version,
    lifespan    = lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins     = settings.cors_origins,
    allow_credentials = True,
    allow_methods     = ["*"],
    allow_headers     = ["*"],
)


def get_resolver(request: Request) -> MetadataResolver:
    return request.app.state.resolver


class MetadataRequest(BaseModel):
    url: str


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    logger.warning("[APP] Fetch failed for %s: %s", exc.url, exc)
    return JSONResponse(
        status_code = 502,
        content     = {"success": False, "error": str(exc)},
    )


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
def health():
    return {"status": "ok", "version": settings.app_version}


@app.post("/api/metadata")
async def fetch_metadata(
    body     : MetadataRequest,
    resolver : MetadataResolver = Depends(get_resolver),
):
    result = await resolver.resolve(body.url)
    return {"success": True, "metadata": result.metadata, "cached": result.cached}


@app.post("/api/metadata/upload")
async def fetch_metadata_upload(
    file     : UploadFile = File(...),
    url      : str        = Form(...),
    resolver : MetadataResolver = Depends(get_resolver),
):
    data = await file.read()
    if len(data) > settings.max_upload_bytes:
        raise HTTPException(
            status_code = 413,
            detail      = f"Upload exceeds {settings.max_upload_mb} MB limit.",
        )
    result = await resolver.resolve(url, raw_bytes=data)
    return {"success": True, "metadata": result.metadata, "cached": result.cached}


@app.get("/api/media-size")
async def media_size(
    url      : str,
    resolver : MetadataResolver = Depends(get_resolver),
):
    size = await resolver.orchestrator.media_size(url)
    return {"success": True, "size": size}


@app.delete("/api/cache")
def clear_cache(resolver: MetadataResolver = Depends(get_resolver)):
    return {"success": True, "cleared": resolver.clear_cache()}


@app.post("/api/data/clear")
def clear_all_data(resolver: MetadataResolver = Depends(get_resolver)):
    return {"success": True, "cleared": resolver.clear_all()}


@app.get("/api/data/stats")
def data_statistics(resolver: MetadataResolver = Depends(get_resolver)):
    return {"success": True, "stats": resolver.statistics()}
