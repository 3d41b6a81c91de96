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
OAuth2 authorization-code flow orchestration.

One login attempt moves through INITIATED -> CALLBACK_RECEIVED ->
TOKEN_EXCHANGED -> PROFILE_FETCHED -> NORMALIZED -> SUCCESS, or stops at
FAILED with the last step reached kept in ``failed_at``. Every outbound
provider call goes through retry and a per provider-endpoint circuit breaker;
transport errors and 5xx replies count against the breaker, 4xx replies do
not. Failures come back as a CallbackOutcome; upstream status codes and
bodies are kept in ``detail`` for logs only.
"""

import asyncio
import hmac
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from .circuit_breaker import CircuitBreakerRegistry
from .config import AppConfig
from .errors import CircuitBreakerOpenError, ErrorKind, ProviderServerError, classify
from .models import NormalizedProfile, Provider
from .providers import ProviderConfig, ProviderRegistry, ProviderStrategy
from .retry import with_retry

logger = logging.getLogger(__name__)

STATE_BYTES = 32  # 256 bits
MAX_LOGGED_BODY = 500


def generate_state() -> str:
    """Cryptographically random, URL-safe OAuth state with 256 bits of entropy."""
    return secrets.token_urlsafe(STATE_BYTES)


def states_match(state: Optional[str], expected_state: Optional[str]) -> bool:
    """Exact, constant-time comparison. A missing value on either side never matches."""
    if not state or not expected_state:
        return False
    return hmac.compare_digest(state.encode("utf-8"), expected_state.encode("utf-8"))


class CallbackPhase(str, Enum):
    INITIATED = "initiated"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    PROFILE_FETCHED = "profile_fetched"
    NORMALIZED = "normalized"
    SUCCESS = "success"
    FAILED = "failed"


class CallbackFailure(str, Enum):
    UNSUPPORTED_PROVIDER = "unsupported_provider"
    INVALID_STATE = "invalid_state"
    PROVIDER_ERROR = "provider_error"
    MISSING_CODE = "missing_code"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    NETWORK_ERROR = "network_error"
    PROVIDER_UNAVAILABLE = "provider_unavailable"


_USER_MESSAGES = {
    CallbackFailure.UNSUPPORTED_PROVIDER: "That sign-in provider is not supported.",
    CallbackFailure.INVALID_STATE: "Your sign-in request expired or was tampered with. Please try again.",
    CallbackFailure.PROVIDER_ERROR: "Sign-in was cancelled or denied by the provider.",
    CallbackFailure.MISSING_CODE: "Sign-in did not complete. Please try again.",
    CallbackFailure.TOKEN_EXCHANGE_FAILED: "Authentication failed. Please try logging in again.",
    CallbackFailure.PROFILE_FETCH_FAILED: "We could not read your profile from the provider. Please try again.",
    CallbackFailure.NETWORK_ERROR: "Unable to reach the sign-in provider. Please try again later.",
    CallbackFailure.PROVIDER_UNAVAILABLE: "The sign-in provider is temporarily unavailable. Please try again later.",
}


def user_message(failure: Optional[CallbackFailure]) -> str:
    """Generic, non-leaking message shown to the end user for a failure."""
    if failure is None:
        return "Authentication failed. Please try logging in again."
    return _USER_MESSAGES[failure]


def parse_failure(value: Optional[str]) -> Optional[CallbackFailure]:
    """Map an ``?error=`` query value back to a CallbackFailure, if it names one."""
    if not value:
        return None
    try:
        return CallbackFailure(value)
    except ValueError:
        return None


@dataclass
class AuthorizationRequest:
    """Redirect target for the user agent and the state the caller must store."""

    provider: Provider
    url: str
    state: str


@dataclass
class CallbackOutcome:
    ok: bool
    phase: CallbackPhase
    provider: Optional[Provider] = None
    profile: Optional[NormalizedProfile] = None
    failure: Optional[CallbackFailure] = None
    failed_at: Optional[CallbackPhase] = None
    detail: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return user_message(self.failure)


class _CallbackFailed(Exception):
    """Internal control flow: carries the failing outcome out of a step."""

    def __init__(self, failure: CallbackFailure, detail: Optional[dict[str, Any]] = None):
        super().__init__(failure.value)
        self.failure = failure
        self.detail = detail or {}


def _truncate(text: str) -> str:
    return text if len(text) <= MAX_LOGGED_BODY else text[:MAX_LOGGED_BODY] + "..."


def _json_object(response: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_http_client(app_config: AppConfig, **kwargs: Any) -> httpx.AsyncClient:
    """Shared outbound client with explicit connect/read timeouts."""
    timeout = httpx.Timeout(
        app_config.http_read_timeout,
        connect=app_config.http_connect_timeout,
    )
    return httpx.AsyncClient(timeout=timeout, follow_redirects=False, **kwargs)


class OAuthOrchestrator:
    """Runs the authorization-code flow against the registered providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        http_client: httpx.AsyncClient,
        breakers: Optional[CircuitBreakerRegistry] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.http_client = http_client
        self.breakers = breakers or CircuitBreakerRegistry()
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def initiate(self, provider: Any) -> AuthorizationRequest:
        """
        Build the authorization redirect for a provider.

        The caller stores ``state`` in the request-scoped store before redirecting.

        Raises:
            UnsupportedProviderError: If the provider is unknown
            ConfigurationError: If the provider config is incomplete
        """
        provider_config = self.registry.require(provider)
        state = generate_state()
        query = urlencode(
            {
                "client_id": provider_config.client_id,
                "response_type": "code",
                "redirect_uri": provider_config.redirect_uri,
                "scope": provider_config.scope,
                "state": state,
            }
        )
        separator = "&" if "?" in provider_config.authorize_url else "?"
        logger.info(f"Initiating OAuth flow for {provider_config.provider.value}")
        return AuthorizationRequest(
            provider=provider_config.provider,
            url=f"{provider_config.authorize_url}{separator}{query}",
            state=state,
        )

    async def _send(self, breaker_name: str, request: Callable[[], Awaitable[httpx.Response]]):
        breaker = self.breakers.get_or_create(breaker_name)

        async def guarded() -> httpx.Response:
            response = await request()
            if response.status_code >= 500:
                raise ProviderServerError(breaker_name, response.status_code, _truncate(response.text))
            return response

        return await with_retry(
            lambda: breaker.call(guarded),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )

    async def _outbound(self, breaker_name: str, request, failure: CallbackFailure):
        """Send a request, translating transport-level failures into callback failures."""
        try:
            return await self._send(breaker_name, request)
        except CircuitBreakerOpenError as e:
            raise _CallbackFailed(
                CallbackFailure.PROVIDER_UNAVAILABLE, {"endpoint": breaker_name, "error": str(e)}
            ) from e
        except ProviderServerError as e:
            raise _CallbackFailed(
                failure, {"endpoint": breaker_name, "status": e.status, "body": e.body}
            ) from e
        except Exception as e:
            if classify(e) == ErrorKind.NETWORK:
                raise _CallbackFailed(
                    CallbackFailure.NETWORK_ERROR,
                    {"endpoint": breaker_name, "error": f"{type(e).__name__}: {e}"},
                ) from e
            raise _CallbackFailed(
                failure, {"endpoint": breaker_name, "error": f"{type(e).__name__}: {e}"}
            ) from e

    async def exchange_code(self, provider_config: ProviderConfig, code: str) -> str:
        """Exchange an authorization code for an access token."""
        name = provider_config.provider.value

        async def request() -> httpx.Response:
            return await self.http_client.post(
                provider_config.token_url,
                data={
                    "client_id": provider_config.client_id,
                    "client_secret": provider_config.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": provider_config.redirect_uri,
                },
                headers={"Accept": "application/json"},
            )

        response = await self._outbound(
            f"{name}:token", request, CallbackFailure.TOKEN_EXCHANGE_FAILED
        )
        if not response.is_success:
            raise _CallbackFailed(
                CallbackFailure.TOKEN_EXCHANGE_FAILED,
                {"status": response.status_code, "body": _truncate(response.text)},
            )
        body = _json_object(response)
        access_token = body.get("access_token") if body else None
        if not isinstance(access_token, str) or not access_token:
            raise _CallbackFailed(
                CallbackFailure.TOKEN_EXCHANGE_FAILED,
                {
                    "status": response.status_code,
                    "reason": "missing access_token",
                    "body": _truncate(response.text),
                },
            )
        return access_token

    async def fetch_profile(
        self, provider_config: ProviderConfig, strategy: ProviderStrategy, access_token: str
    ) -> dict[str, Any]:
        """Fetch the raw user-info object with the provider's header conventions."""
        headers = strategy.build_auth_headers(access_token)

        async def request() -> httpx.Response:
            return await self.http_client.get(provider_config.user_info_url, headers=headers)

        response = await self._outbound(
            f"{provider_config.provider.value}:profile",
            request,
            CallbackFailure.PROFILE_FETCH_FAILED,
        )
        if not response.is_success:
            raise _CallbackFailed(
                CallbackFailure.PROFILE_FETCH_FAILED,
                {"status": response.status_code, "body": _truncate(response.text)},
            )
        raw = _json_object(response)
        if raw is None:
            raise _CallbackFailed(
                CallbackFailure.PROFILE_FETCH_FAILED,
                {"status": response.status_code, "reason": "profile is not a JSON object"},
            )
        return raw

    async def fetch_email(
        self, provider_config: ProviderConfig, strategy: ProviderStrategy, access_token: str
    ) -> Optional[str]:
        """Secondary email lookup. Never fails the login; returns None on any problem."""
        if not provider_config.emails_url:
            return None
        headers = strategy.build_auth_headers(access_token)

        async def request() -> httpx.Response:
            return await self.http_client.get(provider_config.emails_url, headers=headers)

        try:
            response = await self._send(f"{provider_config.provider.value}:emails", request)
        except Exception as e:
            logger.warning(
                f"Email lookup failed for {provider_config.provider.value}: "
                f"{type(e).__name__}: {e}"
            )
            return None
        if not response.is_success:
            logger.warning(
                f"Email lookup for {provider_config.provider.value} "
                f"returned status {response.status_code}"
            )
            return None
        try:
            emails = response.json()
        except ValueError:
            logger.warning(f"Email lookup for {provider_config.provider.value} returned non-JSON")
            return None
        return strategy.select_email(emails)

    async def handle_callback(
        self,
        provider: Any,
        code: Optional[str],
        state: Optional[str],
        expected_state: Optional[str],
        error: Optional[str] = None,
    ) -> CallbackOutcome:
        """
        Complete a login attempt from the provider's callback parameters.

        Args:
            provider: Provider name from the callback route
            code: Authorization code query parameter
            state: State query parameter
            expected_state: State stored at initiation (already popped by the caller)
            error: Provider ``error`` query parameter, e.g. access_denied

        Returns:
            CallbackOutcome; ``ok`` is True only with a normalized profile
        """
        phase = CallbackPhase.INITIATED
        parsed = Provider.parse(provider)
        try:
            provider_config = self.registry.lookup(parsed) if parsed else None
            if parsed is None or provider_config is None:
                raise _CallbackFailed(
                    CallbackFailure.UNSUPPORTED_PROVIDER, {"provider": str(provider)}
                )
            phase = CallbackPhase.CALLBACK_RECEIVED

            # Must precede every outbound call
            if not states_match(state, expected_state):
                raise _CallbackFailed(
                    CallbackFailure.INVALID_STATE,
                    {"state_present": bool(state), "expected_present": bool(expected_state)},
                )
            if error:
                raise _CallbackFailed(CallbackFailure.PROVIDER_ERROR, {"provider_error": error})
            if code is None or not code.strip():
                raise _CallbackFailed(CallbackFailure.MISSING_CODE)
            if not provider_config.is_complete():
                raise _CallbackFailed(
                    CallbackFailure.UNSUPPORTED_PROVIDER, {"reason": "incomplete configuration"}
                )

            strategy = self.registry.strategy(parsed)
            access_token = await self.exchange_code(provider_config, code)
            phase = CallbackPhase.TOKEN_EXCHANGED

            raw = await self.fetch_profile(provider_config, strategy, access_token)
            phase = CallbackPhase.PROFILE_FETCHED

            if strategy.needs_enrichment(raw):
                email = await self.fetch_email(provider_config, strategy, access_token)
                raw = {**raw, "email": email}

            profile = strategy.normalize_profile(raw)
            if profile is None:
                raise _CallbackFailed(
                    CallbackFailure.PROFILE_FETCH_FAILED,
                    {"reason": "profile lacks an id or a display name"},
                )
            phase = CallbackPhase.NORMALIZED
        except _CallbackFailed as failed:
            logger.warning(
                f"OAuth callback failed for {provider} at {phase.value}: {failed.failure.value}"
            )
            return CallbackOutcome(
                ok=False,
                phase=CallbackPhase.FAILED,
                provider=parsed,
                failure=failed.failure,
                failed_at=phase,
                detail=failed.detail,
            )

        logger.info(f"OAuth callback succeeded for {parsed.value}")
        return CallbackOutcome(
            ok=True, phase=CallbackPhase.SUCCESS, provider=parsed, profile=profile
        )
