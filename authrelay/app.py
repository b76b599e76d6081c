from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from authrelay.api.error_handling import error_response, register_exception_handlers
from authrelay.api.routes import router
from authrelay.config import Settings, get_settings
from authrelay.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

# Pages reachable without a session
PUBLIC_ROUTES = (
    "/",
    "/login",
    "/signup",
    "/check-domain",
    "/invite",
    "/forgot-password",
    "/reset-password",
    "/waitlist",
    "/terms-of-service",
    "/privacy-policy",
    "/healthz",
)

PUBLIC_API_ROUTES = (
    "/api/auth/login",
    "/api/auth/signup",
    "/api/auth/check-domain",
    "/api/auth/forgot-password",
    "/api/invites/validate",
    "/api/waitlist",
)

# Signed-in users are sent to the dashboard instead
AUTH_PAGES = ("/login", "/signup", "/forgot-password", "/reset-password")

DASHBOARD_PATH = "/dashboard"
LOGIN_PATH = "/login"


def _matches(pathname: str, routes) -> bool:
    return any(pathname == route or pathname.startswith(route + "/") for route in routes)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the runtime on startup and close its backend client on shutdown."""
    from authrelay.service.runtime import get_runtime

    try:
        get_runtime()
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authrelay", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Avoid a wildcard when credentials are enabled
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


@app.middleware("http")
async def gate_routes(request: Request, call_next):
    """Route gate evaluated before any handler runs.

    Only cookie presence is checked here; validity is the backend's call and
    expired tokens are handled by the refresh path.
    """
    pathname = request.url.path
    if pathname.startswith("/_next") or pathname.startswith("/static/") or "." in pathname:
        return await call_next(request)

    settings = get_settings()
    access = request.cookies.get(settings.access_cookie_name)
    refresh = request.cookies.get(settings.refresh_cookie_name)

    if access and _matches(pathname, AUTH_PAGES):
        return RedirectResponse(DASHBOARD_PATH, status_code=307)

    is_public = _matches(pathname, PUBLIC_ROUTES) or _matches(pathname, PUBLIC_API_ROUTES)
    if not access and not refresh and not is_public:
        if pathname.startswith("/api/"):
            logger.info("route_gate_rejected", path=pathname)
            return error_response(
                401,
                "Please login to access this resource",
                code="unauthorized",
            )
        target = LOGIN_PATH
        if pathname != "/":
            target = f"{LOGIN_PATH}?{urlencode({'redirect': pathname})}"
        return RedirectResponse(target, status_code=307)

    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (or a fresh UUID) to the log context and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    settings = get_settings()
    return {
        "status": "ok",
        "version": __version__,
        "backend_configured": settings.backend_base_url is not None,
    }


def create_app() -> FastAPI:
    return app
