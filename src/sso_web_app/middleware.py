"""
Request pipeline for the web application.

Outermost to innermost: ErrorHandlingMiddleware, SecurityHeadersMiddleware,
Starlette's SessionMiddleware (request-scoped store for OAuth state and the
CSRF token), AuthenticationMiddleware, CsrfMiddleware.
"""

import functools
import logging
from typing import TYPE_CHECKING, Optional
from urllib.parse import parse_qs

from cachetools import TTLCache  # type: ignore[import-untyped]
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response

from .csrf import CSRF_FIELDS, CSRF_HEADER, CsrfGuard, requires_check
from .errors import (
    ErrorKind,
    error_payload,
    get_error_info,
    log_auth_event,
    log_error,
)
from .pages import error_page

if TYPE_CHECKING:
    from .config import AppConfig
    from .models import Session
    from .sessions import SessionManager

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session-id"

SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; "
        "connect-src 'self'; "
        "font-src 'self'; "
        "object-src 'none'; "
        "media-src 'self'; "
        "frame-src 'none'"
    ),
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def wants_json(request: Request) -> bool:
    """API-style callers declare themselves through content negotiation."""
    return "application/json" in request.headers.get("accept", "").lower()


def error_response(request: Request, kind: ErrorKind, details: Optional[dict] = None) -> Response:
    """JSON body for API callers, generic HTML page for browsers."""
    info = get_error_info(kind)
    if wants_json(request):
        return JSONResponse(error_payload(kind, details), status_code=info.status)
    return HTMLResponse(error_page(info.status, info.user_hint), status_code=info.status)


def set_session_cookie(response: Response, session: "Session", app_config: "AppConfig") -> None:
    max_age = int((session.expires_at - session.created_at).total_seconds())
    response.set_cookie(
        SESSION_COOKIE,
        session.session_id,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="strict",
        secure=app_config.cookie_secure,
    )


def clear_session_cookie(response: Response, app_config: "AppConfig") -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        httponly=True,
        samesite="strict",
        secure=app_config.cookie_secure,
    )


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Classifies and logs any exception escaping a handler and renders a safe response."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        try:
            return await call_next(request)
        except Exception as e:
            kind = log_error(request, e)
            return error_response(request, kind)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds hardening headers to every response."""

    def __init__(self, app, headers: Optional[dict[str, str]] = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.headers = headers or SECURITY_HEADERS

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        return response


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Resolves the user behind the session cookie into ``request.state.user``.

    Requests without a valid session continue with ``request.state.user = None``;
    protected handlers decide what to do through ``require_user``. A cookie that
    no longer names a live session is cleared on the response.
    """

    def __init__(self, app, session_manager: "SessionManager", app_config: "AppConfig") -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.session_manager = session_manager
        self.app_config = app_config

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        session_id = request.cookies.get(SESSION_COOKIE)
        user = await self.session_manager.validate(session_id) if session_id else None
        request.state.user = user
        request.state.session_id = session_id if user is not None else None

        stale_cookie = bool(session_id) and user is None
        if stale_cookie:
            log_auth_event("session-invalid", request, session_id=session_id)

        self.session_manager.maybe_cleanup()

        response = await call_next(request)
        if stale_cookie and SESSION_COOKIE not in response.headers.get("set-cookie", ""):
            clear_session_cookie(response, self.app_config)
        return response


class CsrfMiddleware(BaseHTTPMiddleware):
    """Rejects state-changing requests that do not carry the session's CSRF token.

    Safe methods always pass and get a token minted into the request-scoped
    store for later forms.
    """

    def __init__(self, app, guard: CsrfGuard) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.guard = guard

    async def _presented_token(self, request: Request) -> Optional[str]:
        token = request.headers.get(CSRF_HEADER)
        if token:
            return token
        for name in CSRF_FIELDS:
            if request.query_params.get(name):
                return request.query_params[name]
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/x-www-form-urlencoded"):
            body = await request.body()
            fields = parse_qs(body.decode("utf-8", errors="replace"))
            for name in CSRF_FIELDS:
                values = fields.get(name)
                if values and values[0]:
                    return values[0]
        return None

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        if not requires_check(request.method):
            self.guard.token_for(request.session)
            return await call_next(request)

        presented = await self._presented_token(request)
        if not self.guard.validate(request.session, presented):
            log_auth_event(
                "csrf-violation",
                request,
                token_present=bool(presented),
                method=request.method,
            )
            return error_response(request, ErrorKind.CSRF)
        return await call_next(request)


class LoginRateLimiter:
    """Per-client cap on login initiations within a sliding TTL window."""

    def __init__(self, limit: int = 30, window: int = 60, max_clients: int = 10000) -> None:
        self.limit = limit
        self._cache: TTLCache = TTLCache(maxsize=max_clients, ttl=window)

    def check(self, client_id: str) -> bool:
        """Check if client has exceeded rate limit for login initiation.

        Args:
            client_id: Client identifier (typically IP address)

        Returns:
            True if within rate limit, False if exceeded
        """
        if self.limit <= 0:
            return True
        current_count = self._cache.get(client_id, 0)
        if current_count >= self.limit:
            return False
        self._cache[client_id] = current_count + 1
        return True


def client_ip(request: Request) -> str:
    """Client address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def require_user(handler):
    """Route decorator: unauthenticated browsers go to /login, API callers get 401 JSON."""

    @functools.wraps(handler)
    async def wrapper(request: Request):
        if getattr(request.state, "user", None) is None:
            log_auth_event("unauthorized-access", request)
            if wants_json(request):
                return error_response(request, ErrorKind.SESSION)
            return RedirectResponse("/login", status_code=302)
        return await handler(request)

    return wrapper
