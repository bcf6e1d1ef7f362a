"""
FastAPI application for subtitle capture.

This module exposes the message router over HTTP so that out-of-process
consumers can ingest captures, query a tab's subtitle and browse the capture
history.
"""

import asyncio
import logging
import re
import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any

import structlog
from fastapi import Body, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from structlog.contextvars import bind_contextvars, clear_contextvars

from subcapture import __version__
from subcapture.cache import SubtitleCacheManager
from subcapture.config import settings
from subcapture.database import DatabaseLifecycle
from subcapture.history import HistoryManager
from subcapture.models import HistoryItem
from subcapture.router import MessageAction, MessageRouter
from subcapture.storage import create_store
from subcapture.utils import sanitize_for_log
from subcapture.vtt import parse_vtt_entries


def configure_logging(level: str) -> None:
    """Configure structlog for the service and route stdlib logging to the same level."""
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(level=log_level, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level)
logger = structlog.get_logger()

# Request ID context variable
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_remote_address_proxied(request: Request) -> str:
    """Get client address, considering X-Forwarded-For header."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# Track app startup time for uptime calculation
_app_start_time = time.time()

# Simple in-memory rate limiting tracker
_rate_limit_tracker: defaultdict[str, list[float]] = defaultdict(list)
_rate_limit_lock = asyncio.Lock()
_MAX_TRACKED_IPS = 10000  # Prevent memory leak from unbounded growth


async def _check_rate_limit(ip: str, max_requests: int, window_seconds: int = 60) -> bool:
    """
    Check if the IP has exceeded the rate limit.

    Args:
        ip: Client IP address
        max_requests: Maximum requests allowed
        window_seconds: Time window in seconds

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    async with _rate_limit_lock:
        now = time.time()
        _rate_limit_tracker[ip] = [t for t in _rate_limit_tracker[ip] if now - t < window_seconds]
        if len(_rate_limit_tracker[ip]) >= max_requests:
            return False
        _rate_limit_tracker[ip].append(now)

        if len(_rate_limit_tracker) > _MAX_TRACKED_IPS:
            inactive_ips = [
                tracked_ip
                for tracked_ip, timestamps in _rate_limit_tracker.items()
                if all(now - t > window_seconds for t in timestamps)
            ]
            # Remove up to 10% of inactive IPs
            for inactive_ip in inactive_ips[: max(1, _MAX_TRACKED_IPS // 10)]:
                del _rate_limit_tracker[inactive_ip]

        return True


# ============================================================================
# Lifespan Context Manager
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the capture pipeline's receiving side and manage storage."""
    logger.info("=" * 60)
    logger.info("Subtitle Capture Service Starting")
    logger.info("=" * 60)
    logger.info("Cache settings:")
    logger.info(f"  - Durable TTL: {settings.subtitle_ttl_days} days")
    logger.info(f"  - In-memory tabs: {settings.memory_cache_maxsize}")
    logger.info(f"  - History size: {settings.history_max_size}")
    logger.info("Storage:")
    logger.info(f"  - Backend: {settings.storage_backend}")
    if settings.storage_backend == "sqlite":
        logger.info(f"  - File: {settings.database_path}")
    logger.info("Security features:")
    logger.info(f"  - Rate Limiting: {'enabled' if settings.rate_limit_enabled else 'disabled'}")
    logger.info(f"  - Rate Limit: {settings.rate_limit_per_minute}/minute")
    logger.info("=" * 60)

    store = create_store(settings)
    lifecycle = DatabaseLifecycle(store, settings.subtitle_ttl_ms, settings.cache_poll_interval)
    try:
        await lifecycle.startup()
    except Exception as e:
        logger.error(f"Failed to initialize storage: {e}")
        raise

    cache = SubtitleCacheManager(store, settings)
    history = HistoryManager(store, settings)
    app.state.store = store
    app.state.cache = cache
    app.state.router = MessageRouter(cache, history)

    yield

    try:
        await lifecycle.shutdown()
    except Exception as e:
        logger.error(f"Error during storage shutdown: {e}")
        raise


app = FastAPI(
    title="Subtitle Capture Service",
    description="Capture, normalize and cache subtitles observed in page traffic",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ============================================================================
# Middleware Configuration
# ============================================================================


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add request ID for tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request_id_var.set(request_id)

        clear_contextvars()
        bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def configure_middleware():
    """Configure middleware."""
    from fastapi.middleware.cors import CORSMiddleware

    # Add CORS middleware first (runs first in chain)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info("CORS middleware enabled")

    app.add_middleware(RequestIdMiddleware)
    logger.info("Request ID middleware enabled")


# Configure middleware on import
configure_middleware()


# ============================================================================
# Pydantic Models
# ============================================================================


class SubtitleEntryModel(BaseModel):
    """A single subtitle entry with timing and text."""

    start: str = Field(..., description="Start timestamp in VTT format (HH:MM:SS.mmm)")
    end: str = Field(..., description="End timestamp in VTT format (HH:MM:SS.mmm)")
    text: str = Field(..., description="The subtitle text content")

    model_config = {"json_schema_extra": {"example": {"start": "00:00:00.000", "end": "00:00:03.500", "text": "Hello world"}}}


class SubtitleResponse(BaseModel):
    """Response model for a cached subtitle in JSON format."""

    tab_id: int = Field(..., description="Browser tab id")
    page_url: str | None = Field(None, description="Page the subtitle was captured on")
    source_url: str = Field(..., description="URL the subtitle was fetched from")
    source_url_hash: str = Field(..., description="Short hash of the source URL")
    cached_at: int = Field(..., description="Capture time, Unix epoch milliseconds")
    subtitle_count: int = Field(..., description="Number of subtitle entries")
    subtitles: list[SubtitleEntryModel] = Field(..., description="List of subtitle entries")


class SubtitleTextResponse(BaseModel):
    """Response model for a cached subtitle in TEXT format (combined text only)."""

    tab_id: int = Field(..., description="Browser tab id")
    page_url: str | None = Field(None, description="Page the subtitle was captured on")
    source_url: str = Field(..., description="URL the subtitle was fetched from")
    text: str = Field(..., description="Combined subtitle text content")


class CaptureRequest(BaseModel):
    """A subtitle capture forwarded by a capture bridge."""

    url: str = Field(..., min_length=1, max_length=2048, description="URL the subtitle was fetched from")
    content: str = Field(..., min_length=1, description="Canonical WebVTT text")
    page_url: str | None = Field(None, max_length=2048, description="URL of the page hosting the video")


class TabPageRequest(BaseModel):
    """A tab finished loading a page."""

    page_url: str = Field(..., min_length=1, max_length=2048, description="Current page URL of the tab")


class StatusResponse(BaseModel):
    has_subtitle: bool = Field(..., description="Whether a subtitle is available for the tab")


class SuccessResponse(BaseModel):
    success: bool
    error: str | None = None


class TabUpdateResponse(BaseModel):
    success: bool
    loaded: bool = Field(False, description="Whether a cached subtitle was restored")


class HistoryResponse(BaseModel):
    history: list[HistoryItem] = Field(..., description="Captures, most recent first")


class HistoryConfigModel(BaseModel):
    max_size: int = Field(..., ge=1, description="Maximum number of history items kept")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    detail: str | None = Field(None, description="Additional error details")


class HealthResponse(BaseModel):
    """Response model for enhanced health check."""

    status: str = Field(..., description="Service status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: float = Field(..., description="Current Unix timestamp")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    cache: dict = Field(default_factory=dict, description="Cache statistics")
    rate_limiting: dict = Field(default_factory=dict, description="Rate limiting status")
    storage: dict = Field(default_factory=dict, description="Durable storage status")


class OutputFormat(str, Enum):
    """Supported output formats for subtitles."""

    json = "json"
    vtt = "vtt"
    text = "text"


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle Pydantic validation errors with detailed feedback.

    Includes specific field and error information to help developers
    understand what went wrong with their request.
    """
    errors = exc.errors()
    logger.warning(f"Validation error: {errors}")

    error_details = []
    for error in errors:
        loc = " -> ".join(str(x) for x in error["loc"])
        error_details.append(f"{loc}: {error['msg']}")

    error_response = ErrorResponse(
        error="validation_error",
        message="Invalid request parameters",
        detail="; ".join(error_details),
    )
    return Response(
        content=error_response.model_dump_json(),
        status_code=400,
        media_type="application/json",
    )


def get_router(request: Request) -> MessageRouter:
    return request.app.state.router


# ============================================================================
# API Endpoints
# ============================================================================


@app.post("/api/v1/messages", summary="Dispatch a raw protocol message")
async def post_message(request: Request, message: dict[str, Any] = Body(...)) -> dict:
    """
    Dispatch one message of the capture protocol.

    The body is the message itself, e.g. ``{"action": "getStatus", "tabId": 3}``.
    ``tabId`` identifies the sender tab for ``subtitleFound``.

    **Example:**
    ```bash
    curl -X POST "http://localhost:8000/api/v1/messages" \\
      -H "Content-Type: application/json" \\
      -d '{"action": "getHistory"}'
    ```
    """
    return await get_router(request).dispatch(message)


@app.get("/api/v1/tabs/{tab_id}/status", response_model=StatusResponse, summary="Subtitle status of a tab")
async def get_tab_status(
    request: Request,
    tab_id: int,
    page_url: str | None = Query(None, max_length=2048, description="Current page URL of the tab"),
) -> StatusResponse:
    message = {"action": MessageAction.GET_STATUS.value, "tabId": tab_id, "pageUrl": page_url}
    result = await get_router(request).dispatch(message)
    return StatusResponse(has_subtitle=result.get("hasSubtitle", False))


@app.get(
    "/api/v1/tabs/{tab_id}/subtitle",
    response_model=None,
    responses={
        200: {"description": "Cached subtitle"},
        400: {"model": ErrorResponse, "description": "Invalid parameters"},
        404: {"model": ErrorResponse, "description": "No subtitle captured for the tab"},
    },
    summary="Get the cached subtitle of a tab",
)
async def get_tab_subtitle(
    request: Request,
    tab_id: int,
    page_url: str | None = Query(None, max_length=2048, description="Page URL for the durable lookup"),
    format: OutputFormat = Query(OutputFormat.vtt, description="Output format: vtt, json, or text"),
) -> SubtitleResponse | SubtitleTextResponse | PlainTextResponse:
    """
    Return the subtitle cached for a tab.

    The in-memory entry is returned when present; otherwise the durable entry
    of the page is loaded (and restored into memory) if it has not expired.

    **Example Usage:**
    ```bash
    curl "http://localhost:8000/api/v1/tabs/3/subtitle?format=text"
    ```
    """
    router = get_router(request)
    lookup_url = page_url or router.page_url_for(tab_id)
    entry = await router.cache.get(tab_id, lookup_url)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No subtitle captured for tab {tab_id}")

    if format == OutputFormat.vtt:
        return PlainTextResponse(
            content=entry.content,
            headers={
                "Content-Type": "text/vtt; charset=utf-8",
                "X-Source-URL-Hash": entry.source_url_hash,
            },
        )

    entries = parse_vtt_entries(entry.content)
    if format == OutputFormat.text:
        combined_text = " ".join(item.text for item in entries)
        combined_text = re.sub(r"\s+", " ", combined_text).strip()
        return SubtitleTextResponse(
            tab_id=tab_id,
            page_url=entry.page_url,
            source_url=entry.source_url,
            text=combined_text,
        )

    return SubtitleResponse(
        tab_id=tab_id,
        page_url=entry.page_url,
        source_url=entry.source_url,
        source_url_hash=entry.source_url_hash,
        cached_at=entry.cached_at,
        subtitle_count=len(entries),
        subtitles=[SubtitleEntryModel(start=item.start, end=item.end, text=item.text) for item in entries],
    )


@app.post(
    "/api/v1/tabs/{tab_id}/subtitle",
    response_model=SuccessResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid capture"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
    },
    summary="Ingest a captured subtitle",
)
async def post_tab_subtitle(request: Request, tab_id: int, capture: CaptureRequest) -> SuccessResponse:
    """
    Store a capture for a tab and record it in the history.

    **Example:**
    ```bash
    curl -X POST "http://localhost:8000/api/v1/tabs/3/subtitle" \\
      -H "Content-Type: application/json" \\
      -d '{"url": "https://cdn.example.com/en.vtt", "content": "WEBVTT\\n\\n...", "page_url": "https://example.com/v/1"}'
    ```
    """
    if settings.rate_limit_enabled:
        client_ip = get_remote_address_proxied(request)
        if not await _check_rate_limit(client_ip, settings.rate_limit_per_minute):
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {settings.rate_limit_per_minute} requests per minute.",
            )

    logger.info(f"Capture for tab {tab_id} from {sanitize_for_log(capture.url)}")
    result = await get_router(request).dispatch(
        {
            "action": MessageAction.SUBTITLE_FOUND.value,
            "url": capture.url,
            "content": capture.content,
            "pageUrl": capture.page_url,
        },
        sender_tab_id=tab_id,
    )
    return SuccessResponse(success=result.get("success", False), error=result.get("error"))


@app.put("/api/v1/tabs/{tab_id}/page", response_model=TabUpdateResponse, summary="Report a tab navigation")
async def put_tab_page(request: Request, tab_id: int, page: TabPageRequest) -> TabUpdateResponse:
    """Restore a cached subtitle for a tab that finished loading a page."""
    result = await get_router(request).dispatch(
        {"action": MessageAction.TAB_UPDATED.value, "tabId": tab_id, "pageUrl": page.page_url}
    )
    return TabUpdateResponse(success=result.get("success", False), loaded=result.get("loaded", False))


@app.delete("/api/v1/tabs/{tab_id}", response_model=SuccessResponse, summary="Report a closed tab")
async def delete_tab(request: Request, tab_id: int) -> SuccessResponse:
    result = await get_router(request).dispatch({"action": MessageAction.TAB_REMOVED.value, "tabId": tab_id})
    return SuccessResponse(success=result.get("success", False), error=result.get("error"))


@app.get("/api/v1/history", response_model=HistoryResponse, summary="List the capture history")
async def get_history(request: Request) -> HistoryResponse:
    return HistoryResponse(history=await get_router(request).history.summary())


@app.get("/api/v1/history/config", response_model=HistoryConfigModel, summary="Get the history configuration")
async def get_history_config(request: Request) -> HistoryConfigModel:
    result = await get_router(request).dispatch({"action": MessageAction.GET_HISTORY_CONFIG.value})
    return HistoryConfigModel(max_size=result["maxSize"])


@app.put("/api/v1/history/config", response_model=HistoryConfigModel, summary="Update the history configuration")
async def put_history_config(request: Request, config: HistoryConfigModel) -> HistoryConfigModel:
    """Persist a new maximum history size; older items beyond it are dropped."""
    result = await get_router(request).dispatch(
        {"action": MessageAction.UPDATE_HISTORY_CONFIG.value, "maxSize": config.max_size}
    )
    if not result.get("success"):
        raise HTTPException(status_code=400, detail=result.get("error"))
    return HistoryConfigModel(max_size=result["maxSize"])


@app.get(
    "/api/v1/history/{item_id}",
    response_model=HistoryItem,
    responses={404: {"model": ErrorResponse, "description": "History item not found"}},
    summary="Get one history item",
)
async def get_history_item(request: Request, item_id: str) -> HistoryItem:
    item = await get_router(request).history.get(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="History item not found")
    return item


@app.delete(
    "/api/v1/history/{item_id}",
    response_model=SuccessResponse,
    responses={404: {"model": ErrorResponse, "description": "History item not found"}},
    summary="Remove one history item",
)
async def delete_history_item(request: Request, item_id: str) -> SuccessResponse:
    router = get_router(request)
    if await router.history.get(item_id) is None:
        raise HTTPException(status_code=404, detail="History item not found")
    result = await router.dispatch({"action": MessageAction.REMOVE_HISTORY_ITEM.value, "id": item_id})
    return SuccessResponse(success=result.get("success", False), error=result.get("error"))


@app.delete("/api/v1/history", response_model=SuccessResponse, summary="Clear the capture history")
async def clear_history(request: Request) -> SuccessResponse:
    result = await get_router(request).dispatch({"action": MessageAction.CLEAR_HISTORY.value})
    return SuccessResponse(success=result.get("success", False), error=result.get("error"))


@app.get("/", summary="Simple health check")
async def root() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "healthy", "service": "subcapture", "version": __version__}


@app.get("/health", response_model=HealthResponse, summary="Enhanced health check")
async def health(request: Request) -> HealthResponse:
    """
    Enhanced health check with service metrics.

    Returns service status, uptime, cache statistics, and storage status.
    """
    cache_stats = await request.app.state.cache.get_stats()
    storage_status = await request.app.state.store.health_check()

    overall_status = "healthy" if storage_status.get("status") == "healthy" else "degraded"

    return HealthResponse(
        status=overall_status,
        service="subcapture",
        version=__version__,
        timestamp=time.time(),
        uptime_seconds=time.time() - _app_start_time,
        cache=cache_stats,
        rate_limiting={
            "enabled": settings.rate_limit_enabled,
            "per_minute": settings.rate_limit_per_minute,
        },
        storage=storage_status,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)
