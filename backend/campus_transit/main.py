# backend/campus_transit/main.py
import os
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import Response

# rate limiting
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from campus_transit.core.errors import TransitError
from campus_transit.core.logger import api_logger as logger
from campus_transit.core.settings import get_settings
from campus_transit.db import SessionLocal, init_db
from campus_transit.limits import limiter
from campus_transit.services.cache import TopicCache
from campus_transit.services.notifier import Notifier, TelegramWebhook
from campus_transit.services.poller import Poller

# ---- Allowed origins (env-overridable) ----
DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]

def _load_allowed_origins() -> List[str]:
    """
    Optionally override via:
      ALLOWED_ORIGINS="https://transit.campus.example"
      (comma-separated list if multiple)
    """
    raw = os.getenv("ALLOWED_ORIGINS", "")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or DEFAULT_ALLOWED_ORIGINS

ALLOWED_ORIGINS = _load_allowed_origins()

# ---- Default security headers ----
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": (
        "default-src 'self'; "
        "frame-ancestors 'none'; "
        "object-src 'none'; "
        "base-uri 'self'; "
        "form-action 'self'"
    ),
}
# NOTE: HSTS only takes effect when served over HTTPS (enable at your reverse proxy in prod)
STRICT_TRANSPORT_SECURITY = "max-age=31536000; includeSubDomains"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_db()
    poller = None
    if settings.enable_poller:
        webhook = app.state.webhook
        poller = Poller(
            SessionLocal,
            lambda db: Notifier(db, webhook=webhook),
            settings=settings,
            on_change=lambda report: app.state.topic_cache.invalidate(),
        )
        app.state.poller = poller
        poller.start()
    logger.info(f"Campus transit API started (poller={'on' if poller else 'off'})")
    try:
        yield
    finally:
        if poller is not None:
            await poller.stop()
            app.state.poller = None
        app.state.webhook.close()


app = FastAPI(title="Campus Transit Voting API", lifespan=lifespan)

# Shared per-process collaborators; dependencies in deps.py read them from app.state.
app.state.webhook = TelegramWebhook.from_settings()
app.state.topic_cache = TopicCache(ttl_seconds=get_settings().topic_cache_seconds)
app.state.poller = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "content-type", "x-requested-with"],
    max_age=3600,
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(RateLimitExceeded)
def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = JSONResponse(
        status_code=429,
        content={"error": "too_many_requests", "detail": "Try again later."},
    )
    for header, value in (getattr(exc, "headers", {}) or {}).items():
        response.headers.setdefault(header, value)
    return response


@app.exception_handler(TransitError)
def _transit_error_handler(request: Request, exc: TransitError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

# ---- Security headers middleware ----
@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    # HSTS (effective only when behind HTTPS)
    response.headers.setdefault("Strict-Transport-Security", STRICT_TRANSPORT_SECURITY)
    return response

# ---- HTTP Hardening Middleware ----
@app.middleware("http")
async def check_http_hardening(request: Request, call_next):
    # Only GET/POST are routed; refuse PUT/DELETE outright
    if request.method in ["PUT", "DELETE"]:
        return JSONResponse(
            status_code=405,
            content={"detail": "Method Not Allowed"},
            headers={"Allow": "GET, POST, OPTIONS"},
        )

    # POST bodies must be JSON
    if request.method == "POST":
        content_type = request.headers.get("content-type", "")
        if not content_type.lower().startswith("application/json"):
            return JSONResponse(
                status_code=415,
                content={"detail": "Unsupported Media Type. Must be application/json"},
            )

    response: Response = await call_next(request)
    return response

# ---- Health endpoint (used by tests and curl) ----
@app.get("/health")
def health():
    return {"ok": True}

# ---- Routers ----
from campus_transit.routers import admin, complaints, fleet, notifications, topics, users  # noqa: E402

app.include_router(topics.router)
app.include_router(users.router)
app.include_router(fleet.router)
app.include_router(complaints.router)
app.include_router(notifications.router)
app.include_router(admin.router)
