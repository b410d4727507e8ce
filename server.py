import asyncio
import logging
import resource
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from starlette.exceptions import HTTPException as StarletteHTTPException

from dramabox import (
    DramaboxContext,
    DramaboxError,
    NotFound,
    Settings,
    TokenAcquisitionFailed,
    TransportError,
    UpstreamStatusError,
    ValidationError,
)

settings = Settings.from_env()

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("dramabox.server")

STARTED_AT = time.time()


def build_context(settings: Settings) -> DramaboxContext:
    return DramaboxContext(settings)


class RateLimiter:
    """Sliding one-minute window per client key."""

    def __init__(self, limit: int, window: float = 60.0):
        self.limit = limit
        self.window = window
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    def _prune(self, key: str, now: float) -> Deque[float]:
        hits = self._hits[key]
        while hits and now - hits[0] >= self.window:
            hits.popleft()
        return hits

    def _sweep(self, now: float) -> None:
        # Drop clients whose whole window has expired
        for key in list(self._hits):
            if not self._prune(key, now):
                del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        if now - self._last_sweep >= self.window:
            self._sweep(now)
        hits = self._prune(key, now)
        if len(hits) >= self.limit:
            return False
        hits.append(now)
        return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: one context (HTTP client, cache, tokens) for the whole process
    logger.info("🎬 Dramabox API server v%s starting (%s) on port %d", settings.version, settings.env, settings.port)
    app.state.context = build_context(settings)
    app.state.api_limiter = RateLimiter(settings.rate_limit_api)
    app.state.download_limiter = RateLimiter(settings.rate_limit_download)

    yield

    # Shutdown
    logger.info("Shutting down, clearing cache and instances...")
    await app.state.context.aclose()
    logger.info("Shutdown complete")


app = FastAPI(title="Dramabox API", version=settings.version, lifespan=lifespan)

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent / "templates"))


# =============================================
# 📦 RESPONSE ENVELOPE
# =============================================
def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def api_success(data: Any, **meta) -> Dict[str, Any]:
    return {"success": True, "data": data, "meta": {"timestamp": _now_iso(), **meta}}


def api_error(code: str, message: str, details: Any = None) -> Dict[str, Any]:
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error, "meta": {"timestamp": _now_iso()}}


def api_paginated(data: Any, page: int, size: int, has_more: bool) -> Dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "meta": {
            "timestamp": _now_iso(),
            "pagination": {"page": page, "size": size, "hasMore": has_more},
        },
    }


def numeric(value: Optional[str], message: str) -> str:
    if value is None or not str(value).strip().isdigit():
        raise ValidationError(message)
    return str(value).strip()


def dramabox_for(request: Request, lang: Optional[str]):
    return request.app.state.context.dramabox(lang)


def client_key(request: Request, trusted_proxies: int = 0) -> str:
    """
    Address used for rate limiting.

    X-Forwarded-For is only read behind ``trusted_proxies`` reverse proxies,
    and then only the hop the outermost trusted proxy appended; everything to
    its left is client-controlled.
    """
    peer = request.client.host if request.client else "unknown"
    if trusted_proxies <= 0:
        return peer
    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    if len(hops) < trusted_proxies:
        return peer
    return hops[-trusted_proxies]


# =============================================
# 🛡️ MIDDLEWARE
# =============================================
@app.middleware("http")
async def rate_limit(request: Request, call_next):
    path = request.url.path
    if path.startswith("/download/"):
        limiter, message = request.app.state.download_limiter, "Download limited to 5 requests per minute"
    elif path.startswith("/api/"):
        limiter, message = request.app.state.api_limiter, "Too many requests. Try again in 1 minute."
    else:
        return await call_next(request)

    if not limiter.hit(client_key(request, settings.trusted_proxies)):
        return JSONResponse(status_code=429, content=api_error("RATE_LIMIT_EXCEEDED", message))
    return await call_next(request)


@app.middleware("http")
async def request_timeout(request: Request, call_next):
    # The full chapter walk under /download/ is expected to run long
    if not request.url.path.startswith("/api/"):
        return await call_next(request)
    try:
        return await asyncio.wait_for(call_next(request), timeout=settings.request_timeout)
    except asyncio.TimeoutError:
        return JSONResponse(
            status_code=408,
            content=api_error("REQUEST_TIMEOUT", "Request timed out. Please try again."),
        )


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("X-DNS-Prefetch-Control", "off")
    response.headers.setdefault("Strict-Transport-Security", "max-age=15552000; includeSubDomains")
    return response


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    if not settings.is_production:
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.info("[%s] %s - %d (%.0fms)", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


# =============================================
# ❌ ERROR HANDLING
# =============================================
def _root_cause(exc: BaseException) -> BaseException:
    while isinstance(exc, TokenAcquisitionFailed) and exc.__cause__ is not None:
        exc = exc.__cause__
    return exc


@app.exception_handler(DramaboxError)
async def dramabox_error_handler(request: Request, exc: DramaboxError):
    logger.error("[ERROR] %s %s: %s", request.method, request.url.path, exc)
    cause = _root_cause(exc)

    if isinstance(exc, ValidationError):
        return JSONResponse(status_code=400, content=api_error("VALIDATION_ERROR", str(exc)))
    if isinstance(exc, NotFound):
        return JSONResponse(status_code=404, content=api_error("NOT_FOUND", str(exc)))
    if (isinstance(cause, TransportError) and cause.kind == TransportError.TIMEOUT) or (
        isinstance(cause, UpstreamStatusError) and cause.status_code == 408
    ):
        return JSONResponse(status_code=408, content=api_error("REQUEST_TIMEOUT", str(exc)))
    if isinstance(cause, UpstreamStatusError) and cause.status_code == 429:
        return JSONResponse(
            status_code=429,
            content=api_error("UPSTREAM_RATE_LIMIT", "The upstream server is busy. Try again later"),
        )

    message = "An error occurred on the server" if settings.is_production else str(exc)
    return JSONResponse(status_code=500, content=api_error("INTERNAL_ERROR", message))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(str(err["loc"][-1]) for err in exc.errors())
    return JSONResponse(status_code=400, content=api_error("VALIDATION_ERROR", f"Invalid parameters: {fields}"))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        message = f"Endpoint {request.method} {request.url.path} not found"
        return JSONResponse(status_code=404, content=api_error("NOT_FOUND", message))
    return JSONResponse(status_code=exc.status_code, content=api_error("HTTP_ERROR", str(exc.detail)))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("[ERROR] %s %s", request.method, request.url.path)
    message = "An error occurred on the server" if settings.is_production else str(exc)
    return JSONResponse(status_code=500, content=api_error("INTERNAL_ERROR", message))


# =============================================
# 💚 HEALTH & DOCS
# =============================================
@app.get("/health")
async def health():
    max_rss_mb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss // 1024
    return {
        "status": "healthy",
        "uptime": round(time.time() - STARTED_AT, 1),
        "timestamp": _now_iso(),
        "version": settings.version,
        "memory": {"maxRss": f"{max_rss_mb}MB"},
    }


@app.get("/", response_class=HTMLResponse)
async def docs_page(request: Request):
    """Static documentation page listing every endpoint."""
    return templates.TemplateResponse(
        request, "docs.html", {"port": settings.port, "version": settings.version, "lang": settings.default_lang}
    )


# =============================================
# 🔍 SEARCH & LISTINGS
# =============================================
@app.get("/api/search")
async def api_search(request: Request, keyword: Optional[str] = None, page: int = 1, size: int = 20, lang: Optional[str] = None):
    """
    Search dramas by keyword.

    Example: /api/search?keyword=love&page=1&size=20&lang=pt
    """
    result = await dramabox_for(request, lang).search(keyword, page, size)
    return api_paginated(result["items"], page, size, result["hasMore"])


@app.get("/api/suggest")
async def api_suggest(request: Request, keyword: Optional[str] = None, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).suggest(keyword)
    return api_success(result, total=len(result))


@app.get("/api/search/hot")
async def api_hot_searches(request: Request, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).hot_searches()
    return api_success(result, total=len(result))


@app.get("/api/home")
async def api_home(request: Request, page: int = 1, size: int = 10, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).list_home(page, size)
    return api_paginated(result["items"], page, size, result["hasMore"])


@app.get("/api/vip")
async def api_vip(request: Request, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).get_vip_theater()
    return api_success(result)


@app.get("/api/categories")
async def api_categories(request: Request, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).list_categories()
    return api_success(result, total=len(result))


@app.get("/api/category/{category_id}")
async def api_category(request: Request, category_id: str, page: int = 1, size: int = 10, lang: Optional[str] = None):
    category_id = numeric(category_id, "category id must be a number")
    result = await dramabox_for(request, lang).list_by_category(int(category_id), page, size)
    return api_success(result)


@app.get("/api/recommend")
async def api_recommend(request: Request, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).list_recommended()
    return api_success(result, total=len(result))


# =============================================
# 🎬 DRAMA DETAILS, CHAPTERS & STREAMS
# =============================================
@app.get("/api/detail/{book_id}/v2")
async def api_detail_v2(request: Request, book_id: str, lang: Optional[str] = None):
    """
    Drama metadata and chapter index from the webfic surface.

    Example: /api/detail/42000003970/v2?lang=pt
    """
    book_id = numeric(book_id, "bookId must be a number")
    result = await dramabox_for(request, lang).get_detail(book_id)
    return api_success(result)


@app.get("/api/detail/{book_id}")
async def api_detail(request: Request, book_id: str, lang: Optional[str] = None):
    book_id = numeric(book_id, "bookId must be a number")
    result = await dramabox_for(request, lang).get_drama_detail(book_id)
    return api_success(result)


@app.get("/api/chapters/{book_id}")
async def api_chapters(request: Request, book_id: str, lang: Optional[str] = None):
    book_id = numeric(book_id, "bookId must be a number")
    result = await dramabox_for(request, lang).list_chapters(book_id)
    return api_success(result, total=len(result))


@app.get("/api/stream")
async def api_stream(request: Request, bookId: Optional[str] = None, episode: Optional[str] = None, lang: Optional[str] = None):
    """
    Playable mp4/m3u8 links for one episode.

    Example: /api/stream?bookId=42000003970&episode=1
    """
    if not bookId or not episode:
        missing = [name for name, value in (("bookId", bookId), ("episode", episode)) if not value]
        raise ValidationError(f"Required parameters: {', '.join(missing)}")
    book_id = numeric(bookId, "bookId and episode must be numbers")
    episode_no = numeric(episode, "bookId and episode must be numbers")
    result = await dramabox_for(request, lang).get_stream_url(book_id, int(episode_no))
    return api_success(result)


@app.get("/download/{book_id}")
async def download_all(request: Request, book_id: str, lang: Optional[str] = None):
    """
    Every chapter of a drama with a resolved video path.

    Heavy: walks the whole chapter listing, limited to 5 requests per minute.
    """
    book_id = numeric(book_id, "bookId must be a number")
    result = await dramabox_for(request, lang).batch_list_all_chapters(book_id)

    if not result.items:
        return JSONResponse(
            status_code=404,
            content=api_error("NOT_FOUND", "Data not found or an error occurred", details=result.errors or None),
        )

    return api_success(
        [record.to_dict() for record in result.items],
        total=len(result.items),
        bookId=book_id,
        suppressedErrors=len(result.errors),
    )


# =============================================
# 🔧 UTILITIES
# =============================================
@app.get("/api/generate-header")
async def api_generate_header(request: Request, lang: Optional[str] = None):
    result = await dramabox_for(request, lang).get_debug_headers()
    return api_success(result)


@app.get("/api/cache/stats")
async def api_cache_stats(request: Request, lang: Optional[str] = None):
    return api_success(dramabox_for(request, lang).get_cache_stats())


@app.post("/api/cache/clear")
async def api_cache_clear(request: Request, lang: Optional[str] = None):
    dramabox_for(request, lang).clear_cache()
    return api_success({"cleared": True})


if __name__ == "__main__":
    logger.info("Starting Dramabox API server...")
    logger.info("Open http://localhost:%d for the docs", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, timeout_graceful_shutdown=int(settings.shutdown_timeout))
