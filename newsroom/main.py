"""
Newsroom Homepage - Main FastAPI Application
Serves the generated homepage with stale-while-revalidate caching
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header
from fastapi.responses import JSONResponse

from config.settings import settings
from newsroom.admin import TokenCheck, bearer_token, check_token, clear_cache, debug_snapshot
from newsroom.cache import RefreshCoordinator, build_ttl_config, get_cache_store
from newsroom.exceptions import ConfigurationError, GenerationFailure, RefreshInProgress
from newsroom.pipeline import load_pipeline
from newsroom.schemas import ClearCacheRequest, TokenRequest
from newsroom.server import HomepageServer
from newsroom.status import build_refresh_status, status_unavailable

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")

# Version tracking
APP_VERSION = "v1.0.0"
APP_NAME = "Newsroom Homepage"

# Lazily built so importing the app never touches Redis or the pipeline
_coordinator: Optional[RefreshCoordinator] = None
_homepage_server: Optional[HomepageServer] = None


def get_coordinator() -> RefreshCoordinator:
    """Get or create the process-wide refresh coordinator."""
    global _coordinator
    if _coordinator is None:
        try:
            pipeline = load_pipeline(settings)
        except ConfigurationError as e:
            logger.warning(f"{e}. Homepage generation is unavailable until configured.")
            pipeline = None
        _coordinator = RefreshCoordinator(get_cache_store(), pipeline=pipeline, settings=settings)
    return _coordinator


def get_homepage_server(
    coordinator: RefreshCoordinator = Depends(get_coordinator),
) -> HomepageServer:
    global _homepage_server
    if _homepage_server is None or _homepage_server.coordinator is not coordinator:
        _homepage_server = HomepageServer(coordinator, settings=settings)
    return _homepage_server


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _coordinator is not None:
        _coordinator.shutdown(wait=False)


app = FastAPI(
    title=APP_NAME,
    description="Clustered news homepage served from a stale-while-revalidate cache",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@app.get("/api/homepage")
def homepage(server: HomepageServer = Depends(get_homepage_server)):
    """
    Homepage data.

    - Cached data is always served immediately (fromCache: true); data
      older than the staleness threshold also schedules a background refresh
    - With no cache and a refresh running: 503 with Retry-After
    - With no cache and nothing running: generates synchronously (cold start)
    """
    try:
        response = server.read()
    except RefreshInProgress as e:
        return JSONResponse(
            status_code=503,
            content={
                "error": str(e),
                "refreshing": True,
                "fromCache": False,
                "retryAfter": e.retry_after,
            },
            headers={"Retry-After": str(e.retry_after)},
        )
    except ConfigurationError as e:
        return JSONResponse(status_code=503, content={"error": str(e), "refreshing": False})
    except GenerationFailure as e:
        return JSONResponse(status_code=500, content={"error": str(e) or "Failed to load homepage data"})

    return JSONResponse(
        content=response.to_dict(),
        headers={"Cache-Control": "no-store"},
    )


@app.get("/api/refresh-status")
def refresh_status(coordinator: RefreshCoordinator = Depends(get_coordinator)):
    """Progress of the current or most recent refresh."""
    now = time.time()
    try:
        progress = coordinator.get_refresh_progress()
    except Exception as e:
        logger.error(f"Refresh status error: {e}")
        return status_unavailable(now).to_dict()
    return build_refresh_status(progress, now).to_dict()


@app.post("/api/validate-token")
def validate_token(request: TokenRequest):
    """Check a cache-clearing token against CACHE_CLEAR_TOKEN."""
    result = check_token(request.token, settings.cache_clear_token)

    if result == TokenCheck.NOT_CONFIGURED:
        return JSONResponse(
            status_code=503,
            content={"valid": False, "error": "Token validation not available - server not configured"},
        )
    if result == TokenCheck.MISSING:
        return {"valid": False, "error": "Token is required"}
    if result == TokenCheck.INVALID:
        return {"valid": False, "error": "Invalid token"}
    return {
        "valid": True,
        "message": "Token is valid",
        "permissions": ["cache:clear"],
        "expiresAt": None,
    }


@app.post("/api/clear-cache")
def clear_cache_endpoint(
    request: Optional[ClearCacheRequest] = None,
    authorization: Optional[str] = Header(None),
    coordinator: RefreshCoordinator = Depends(get_coordinator),
):
    """
    Clear cached entries in this environment's namespace.

    Token via 'Authorization: Bearer <token>' or the request body.
    Body {"pattern": "homepage"} clears only matching keys.
    """
    request = request or ClearCacheRequest()
    token = bearer_token(authorization) or request.token
    result = check_token(token, settings.cache_clear_token)

    if result == TokenCheck.NOT_CONFIGURED:
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "Cache clearing not available - server not configured"},
        )
    if result != TokenCheck.VALID:
        return JSONResponse(status_code=401, content={"success": False, "error": "Invalid token"})

    return clear_cache(coordinator.store, request.pattern)


@app.get("/api/debug-cache")
def debug_cache(coordinator: RefreshCoordinator = Depends(get_coordinator)):
    """Read-only cache diagnostics."""
    snapshot = debug_snapshot(coordinator, settings)
    snapshot["timestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    return JSONResponse(content=snapshot, headers={"Cache-Control": "no-store"})


def _run_cron_refresh(authorization: Optional[str], coordinator: RefreshCoordinator):
    result = check_token(bearer_token(authorization), settings.cron_secret)
    if result == TokenCheck.NOT_CONFIGURED:
        return JSONResponse(
            status_code=503,
            content={"success": False, "error": "Scheduled refresh not available - CRON_SECRET not configured"},
        )
    if result != TokenCheck.VALID:
        logger.error("Unauthorized cron request - missing or invalid authorization")
        return JSONResponse(
            status_code=401,
            content={
                "success": False,
                "error": "Unauthorized - cron requests must include proper authorization",
            },
        )

    started = time.time()
    logger.info("Starting scheduled cache refresh...")
    refreshed = coordinator.run_refresh()
    duration_ms = int((time.time() - started) * 1000)

    if not refreshed:
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Refresh skipped or failed; see refresh-status for details",
                "duration": f"{duration_ms}ms",
            },
        )
    logger.info(f"Scheduled cache refresh completed in {duration_ms}ms")
    return {
        "success": True,
        "message": "Cache refresh completed successfully",
        "duration": f"{duration_ms}ms",
    }


@app.get("/api/cron/daily-refresh")
def cron_refresh(
    authorization: Optional[str] = Header(None),
    coordinator: RefreshCoordinator = Depends(get_coordinator),
):
    """Scheduled full refresh; runs synchronously. Requires Bearer CRON_SECRET."""
    return _run_cron_refresh(authorization, coordinator)


@app.post("/api/cron/daily-refresh")
def cron_refresh_post(
    authorization: Optional[str] = Header(None),
    coordinator: RefreshCoordinator = Depends(get_coordinator),
):
    """Same as GET, for webhook schedulers."""
    return _run_cron_refresh(authorization, coordinator)


@app.get("/cache/stats")
def cache_stats(
    coordinator: RefreshCoordinator = Depends(get_coordinator),
    server: HomepageServer = Depends(get_homepage_server),
):
    """Get cache statistics."""
    return {
        "store": coordinator.store.get_stats(),
        "refresh": coordinator.get_stats(),
        "coalescer": server.coalescer.get_stats(),
        "ttl": build_ttl_config(settings),
    }
