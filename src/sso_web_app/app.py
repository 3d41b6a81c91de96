#!/usr/bin/env python3
# MIT License
#
# Copyright (c) 2025 SSO Web App Contributors
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Starlette application factory, routes and lifecycle.

Every stateful component (storage, breakers, orchestrator, session manager,
cleanup task, CSRF guard) is built here and injected; tests pass their own.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from .circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from .config import AppConfig
from .config import config as default_config
from .csrf import CsrfGuard
from .errors import (
    ErrorKind,
    UnsupportedProviderError,
    log_auth_event,
    redact_secrets,
)
from .middleware import (
    AuthenticationMiddleware,
    CsrfMiddleware,
    ErrorHandlingMiddleware,
    LoginRateLimiter,
    SecurityHeadersMiddleware,
    clear_session_cookie,
    client_ip,
    error_response,
    require_user,
    set_session_cookie,
)
from .oauth import (
    CallbackFailure,
    OAuthOrchestrator,
    create_http_client,
    parse_failure,
    states_match,
    user_message,
)
from .pages import dashboard_page, login_page
from .providers import ProviderRegistry, build_registry
from .sessions import SessionCleanupTask, SessionManager
from .storage import Storage, create_or_update_user, create_storage
from .validation import OAuthParamValidator

logger = logging.getLogger(__name__)

OAUTH_STATE_KEY = "oauth_state"
FLOW_COOKIE = "sso-flow"


def _login_redirect(failure_code: Optional[str] = None) -> RedirectResponse:
    url = "/login"
    if failure_code:
        url = f"{url}?{urlencode({'error': failure_code})}"
    return RedirectResponse(url, status_code=302)


async def home(request: Request) -> Response:
    if request.state.user is not None:
        return RedirectResponse("/dashboard", status_code=302)
    return RedirectResponse("/login", status_code=302)


async def login(request: Request) -> Response:
    if request.state.user is not None:
        return RedirectResponse("/dashboard", status_code=302)
    registry: ProviderRegistry = request.app.state.registry
    error = request.query_params.get("error")
    message = user_message(parse_failure(error)) if error else None
    return HTMLResponse(login_page(registry.supported_providers(), message))


async def auth_initiate(request: Request) -> Response:
    """Start the OAuth flow: store a fresh state, redirect to the provider."""
    provider = request.path_params["provider"]
    rate_limiter: LoginRateLimiter = request.app.state.rate_limiter
    client = client_ip(request)
    if not rate_limiter.check(client):
        log_auth_event("rate-limited", request, provider=provider)
        return JSONResponse({"error": "Too many login attempts"}, status_code=429)

    log_auth_event("login-attempt", request, provider=provider)
    orchestrator: OAuthOrchestrator = request.app.state.orchestrator
    try:
        authorization = orchestrator.initiate(provider)
    except UnsupportedProviderError:
        log_auth_event("oauth-failure", request, provider=provider, reason="unsupported_provider")
        return _login_redirect("unsupported_provider")

    request.session[OAUTH_STATE_KEY] = authorization.state
    log_auth_event("oauth-initiated", request, provider=authorization.provider.value)
    return RedirectResponse(authorization.url, status_code=302)


async def auth_callback(request: Request) -> Response:
    """Complete the OAuth flow, upsert the user and issue a session cookie."""
    provider = request.path_params["provider"]
    # Single use: only the OAuth transaction state leaves the store
    expected_state = request.session.pop(OAUTH_STATE_KEY, None)

    code_valid, params = OAuthParamValidator.parse_callback(request.query_params)
    if not code_valid:
        if not states_match(params.state, expected_state):
            log_auth_event("oauth-failure", request, provider=provider, reason="invalid_state")
            return _login_redirect(CallbackFailure.INVALID_STATE.value)
        logger.warning(f"Invalid OAuth code parameter in request to {request.url.path}")
        log_auth_event("oauth-failure", request, provider=provider, reason="malformed_code")
        return error_response(request, ErrorKind.VALIDATION)

    log_auth_event(
        "oauth-callback",
        request,
        provider=provider,
        has_code=params.code is not None,
        provider_error=params.error,
    )
    orchestrator: OAuthOrchestrator = request.app.state.orchestrator
    outcome = await orchestrator.handle_callback(
        provider,
        code=params.code,
        state=params.state,
        expected_state=expected_state,
        error=params.error,
    )
    if not outcome.ok:
        log_auth_event(
            "oauth-failure",
            request,
            provider=provider,
            failure=outcome.failure.value if outcome.failure else None,
            failed_at=outcome.failed_at.value if outcome.failed_at else None,
            detail=redact_secrets(outcome.detail),
        )
        return _login_redirect(outcome.failure.value if outcome.failure else None)

    storage: Storage = request.app.state.storage
    session_manager: SessionManager = request.app.state.session_manager
    user = await create_or_update_user(storage, outcome.profile)
    session = await session_manager.create(user.id)
    request.app.state.csrf_guard.rotate(request.session)

    log_auth_event("oauth-success", request, provider=provider, user_id=user.id)
    log_auth_event("session-created", request, user_id=user.id, expires_at=session.expires_at)

    response = RedirectResponse("/dashboard", status_code=302)
    set_session_cookie(response, session, request.app.state.config)
    return response


@require_user
async def dashboard(request: Request) -> Response:
    token = request.app.state.csrf_guard.token_for(request.session)
    return HTMLResponse(dashboard_page(request.state.user, token))


@require_user
async def logout(request: Request) -> Response:
    session_manager: SessionManager = request.app.state.session_manager
    await session_manager.invalidate(request.state.session_id)
    request.app.state.csrf_guard.rotate(request.session)
    log_auth_event("logout", request, user_id=request.state.user.id)
    response = RedirectResponse("/", status_code=303)
    clear_session_cookie(response, request.app.state.config)
    return response


async def health(request: Request) -> JSONResponse:
    """Health check endpoint."""
    storage: Storage = request.app.state.storage
    try:
        database_ok = await storage.ping()
    except Exception as e:
        logger.error(f"Health check storage ping failed: {e}")
        database_ok = False
    status = "healthy" if database_ok else "unhealthy"
    return JSONResponse(
        {
            "status": status,
            "database": "ok" if database_ok else "unavailable",
            "breakers": request.app.state.breakers.get_all_stats(),
            "server": "sso-web-app",
        },
        status_code=200 if database_ok else 503,
    )


def create_app(
    app_config: Optional[AppConfig] = None,
    storage: Optional[Storage] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    registry: Optional[ProviderRegistry] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Starlette:
    """
    Create the Starlette application.

    Args:
        app_config: Application configuration (defaults to the environment)
        storage: Storage collaborator (defaults to one built from DATABASE_URL)
        http_client: Outbound client for provider calls; owned by the app when omitted
        registry: Provider registry (defaults to Microsoft and GitHub from config)
        breakers: Circuit breaker registry for provider endpoints
        sleep: Retry delay function, replaceable in tests

    Returns:
        Starlette application instance
    """
    app_config = app_config or default_config
    for problem in app_config.validate():
        logger.warning(f"Configuration problem: {problem}")

    storage = storage or create_storage(app_config.database_url)
    owns_client = http_client is None
    http_client = http_client or create_http_client(app_config)
    registry = registry or build_registry(app_config)
    breakers = breakers or CircuitBreakerRegistry(
        CircuitBreakerConfig(
            failure_threshold=app_config.breaker_failure_threshold,
            reset_timeout=app_config.breaker_reset_timeout,
        )
    )
    orchestrator = OAuthOrchestrator(
        registry,
        http_client,
        breakers,
        max_attempts=app_config.retry_max_attempts,
        base_delay=app_config.retry_base_delay,
        sleep=sleep,
    )
    session_manager = SessionManager(
        storage,
        ttl=timedelta(hours=app_config.session_ttl_hours),
        cleanup_interval=app_config.session_cleanup_interval,
    )
    cleanup_task = SessionCleanupTask(session_manager, app_config.session_cleanup_interval)
    csrf_guard = CsrfGuard(app_config.csrf_test_bypass, production=app_config.is_production)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette):
        await storage.initialize()
        cleanup_task.start()
        logger.info(f"SSO web app started: {app_config.to_dict()}")
        try:
            yield
        finally:
            await cleanup_task.stop()
            try:
                await session_manager.cleanup_expired()
            except Exception as e:
                logger.error(f"Final session cleanup failed: {e}")
            if owns_client:
                await http_client.aclose()
            await storage.close()
            logger.info("SSO web app stopped")

    routes = [
        Route("/", home, methods=["GET"]),
        Route("/login", login, methods=["GET"]),
        Route("/auth/{provider}", auth_initiate, methods=["GET"]),
        Route("/auth/{provider}/callback", auth_callback, methods=["GET"]),
        Route("/dashboard", dashboard, methods=["GET"]),
        Route("/logout", logout, methods=["POST"]),
        Route("/health", health, methods=["GET"]),
    ]
    middleware = [
        Middleware(ErrorHandlingMiddleware),
        Middleware(SecurityHeadersMiddleware),
        # Lax so the cross-site redirect back from the provider still carries the state
        Middleware(
            SessionMiddleware,
            secret_key=app_config.session_secret,
            session_cookie=FLOW_COOKIE,
            max_age=app_config.session_ttl_seconds,
            same_site="lax",
            https_only=app_config.cookie_secure,
        ),
        Middleware(AuthenticationMiddleware, session_manager=session_manager, app_config=app_config),
        Middleware(CsrfMiddleware, guard=csrf_guard),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.config = app_config
    app.state.storage = storage
    app.state.http_client = http_client
    app.state.registry = registry
    app.state.breakers = breakers
    app.state.orchestrator = orchestrator
    app.state.session_manager = session_manager
    app.state.cleanup_task = cleanup_task
    app.state.csrf_guard = csrf_guard
    app.state.rate_limiter = LoginRateLimiter(
        app_config.login_rate_limit,
        app_config.rate_limit_window,
        app_config.rate_limit_max_clients,
    )
    return app
