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
Error taxonomy, classification and error responses.

Every failure surfaced by the core maps onto one ErrorKind. The kind decides
the HTTP status, the log level and the generic message a user gets to see;
upstream details stay in the logs.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("sso_web_app.audit")


class ErrorKind(str, Enum):
    """Classification of failures for structured handling."""

    DATABASE = "database"
    NETWORK = "network"
    AUTHORIZATION = "authorization"
    OAUTH = "oauth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SESSION = "session"
    CSRF = "csrf"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str
    status: int
    log_level: int
    user_hint: str


ERROR_INFO: dict[ErrorKind, ErrorInfo] = {
    ErrorKind.DATABASE: ErrorInfo(
        "DB_ERROR",
        "Database operation failed",
        500,
        logging.ERROR,
        "We're experiencing technical difficulties. Please try again later.",
    ),
    ErrorKind.OAUTH: ErrorInfo(
        "OAUTH_ERROR",
        "OAuth authentication failed",
        401,
        logging.WARNING,
        "Authentication failed. Please try logging in again.",
    ),
    ErrorKind.NETWORK: ErrorInfo(
        "NETWORK_ERROR",
        "Network communication failed",
        503,
        logging.ERROR,
        "Unable to connect to external services. Please try again later.",
    ),
    ErrorKind.VALIDATION: ErrorInfo(
        "VALIDATION_ERROR",
        "Input validation failed",
        400,
        logging.WARNING,
        "The information provided is invalid. Please check and try again.",
    ),
    ErrorKind.AUTHORIZATION: ErrorInfo(
        "AUTHORIZATION_ERROR",
        "Access denied",
        403,
        logging.WARNING,
        "You don't have permission to access this resource.",
    ),
    ErrorKind.NOT_FOUND: ErrorInfo(
        "NOT_FOUND",
        "Resource not found",
        404,
        logging.INFO,
        "The page you're looking for doesn't exist.",
    ),
    ErrorKind.SESSION: ErrorInfo(
        "SESSION_ERROR",
        "Session management failed",
        401,
        logging.WARNING,
        "Your session has expired. Please log in again.",
    ),
    ErrorKind.CSRF: ErrorInfo(
        "CSRF_ERROR",
        "CSRF token validation failed",
        403,
        logging.WARNING,
        "Security validation failed. Please refresh the page and try again.",
    ),
    ErrorKind.CONFIGURATION: ErrorInfo(
        "CONFIG_ERROR",
        "Configuration error",
        500,
        logging.ERROR,
        "The application is misconfigured. Please contact support.",
    ),
    ErrorKind.UNKNOWN: ErrorInfo(
        "UNKNOWN_ERROR",
        "An unexpected error occurred",
        500,
        logging.ERROR,
        "An unexpected error occurred. Please try again later.",
    ),
}


def get_error_info(kind: ErrorKind) -> ErrorInfo:
    return ERROR_INFO.get(kind, ERROR_INFO[ErrorKind.UNKNOWN])


class SsoError(Exception):
    """Base class of every typed failure raised by the core."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_code: str = "SSO_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "error_code": self.code,
            "details": self.details,
        }


class OAuthError(SsoError):
    kind = ErrorKind.OAUTH
    default_code = "OAUTH_ERROR"


class UnsupportedProviderError(OAuthError):
    default_code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider: Any):
        super().__init__(f"Unsupported OAuth provider: {provider}", details={"provider": str(provider)})


class InvalidStateError(OAuthError):
    default_code = "INVALID_STATE"


class MissingCodeError(OAuthError):
    default_code = "MISSING_CODE"


class ProviderDeniedError(OAuthError):
    default_code = "PROVIDER_ERROR"


class TokenExchangeError(OAuthError):
    default_code = "TOKEN_EXCHANGE_FAILED"


class ProfileFetchError(OAuthError):
    default_code = "PROFILE_FETCH_FAILED"


class ProviderServerError(OAuthError):
    """A provider endpoint answered with a 5xx status."""

    default_code = "PROVIDER_SERVER_ERROR"

    def __init__(self, url: str, status: int, body: str = ""):
        super().__init__(
            f"Provider endpoint {url} returned {status}",
            details={"status": status, "body": body},
        )
        self.status = status
        self.body = body


class SessionError(SsoError):
    kind = ErrorKind.SESSION
    default_code = "SESSION_ERROR"


class CsrfError(SsoError):
    kind = ErrorKind.CSRF
    default_code = "CSRF_ERROR"


class ConfigurationError(SsoError):
    kind = ErrorKind.CONFIGURATION
    default_code = "CONFIG_ERROR"


class ValidationError(SsoError):
    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class StorageError(SsoError):
    kind = ErrorKind.DATABASE
    default_code = "DB_ERROR"


class SecurityError(SsoError):
    kind = ErrorKind.AUTHORIZATION
    default_code = "AUTHORIZATION_ERROR"


class NotFoundError(SsoError):
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"


class CircuitBreakerOpenError(SsoError):
    """Raised without invoking the protected call while a breaker is open."""

    kind = ErrorKind.NETWORK
    default_code = "BREAKER_OPEN"


_NETWORK_TYPES: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.TransportError,
    TimeoutError,
    ConnectionError,
    OSError,
)

# Checked in order; the first match wins.
_MESSAGE_KEYWORDS: list[tuple[re.Pattern, ErrorKind]] = [
    (re.compile(r"oauth|auth", re.IGNORECASE), ErrorKind.OAUTH),
    (re.compile(r"session", re.IGNORECASE), ErrorKind.SESSION),
    (re.compile(r"csrf", re.IGNORECASE), ErrorKind.CSRF),
    (re.compile(r"config", re.IGNORECASE), ErrorKind.CONFIGURATION),
    (re.compile(r"validation|invalid", re.IGNORECASE), ErrorKind.VALIDATION),
]


def classify(error: BaseException) -> ErrorKind:
    """Classify an exception into an ErrorKind.

    Typed errors carry their own kind. Storage and transport errors are
    matched by type, security errors map to AUTHORIZATION, and anything else
    falls back to a case-insensitive keyword match over the message.
    Best effort: ambiguous cases resolve to UNKNOWN.
    """
    if isinstance(error, SsoError):
        return error.kind
    if isinstance(error, SQLAlchemyError):
        return ErrorKind.DATABASE
    if isinstance(error, PermissionError):
        return ErrorKind.AUTHORIZATION
    if isinstance(error, _NETWORK_TYPES):
        return ErrorKind.NETWORK
    if isinstance(error, Exception):
        message = str(error)
        for pattern, kind in _MESSAGE_KEYWORDS:
            if pattern.search(message):
                return kind
    return ErrorKind.UNKNOWN


def is_transient(error: BaseException) -> bool:
    """Whether an error is a transient network failure worth retrying."""
    if isinstance(error, CircuitBreakerOpenError):
        return False
    return classify(error) == ErrorKind.NETWORK


_SECRET_FIELDS = {
    "access_token",
    "client_secret",
    "code",
    "csrf_token",
    "password",
    "refresh_token",
    "secret",
    "session_id",
    "session_secret",
    "state",
    "token",
}


def redact_secrets(data: dict[str, Any]) -> dict[str, Any]:
    """Copy of a log payload with secret-bearing fields masked."""
    redacted: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            redacted[key] = redact_secrets(value)
        elif key.lower().replace("-", "_") in _SECRET_FIELDS and value:
            text = str(value)
            redacted[key] = f"{text[:4]}..." if len(text) > 8 else "[REDACTED]"
        else:
            redacted[key] = value
    return redacted


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def request_context(request: Any) -> dict[str, Any]:
    """Structured request fields shared by error and audit logs."""
    if request is None:
        return {}
    client = getattr(request, "client", None)
    state = getattr(request, "state", None)
    user = getattr(state, "user", None) if state is not None else None
    return {
        "request_uri": request.url.path,
        "request_method": request.method,
        "user_agent": request.headers.get("user-agent"),
        "remote_addr": client.host if client else None,
        "user_id": user.id if user is not None else None,
    }


def create_error_context(request: Any, error: BaseException, kind: ErrorKind) -> dict[str, Any]:
    info = get_error_info(kind)
    context = {
        "timestamp": _timestamp(),
        "error_type": kind.value,
        "error_code": info.code,
        "exception_class": type(error).__name__,
        "exception_message": str(error),
    }
    context.update(request_context(request))
    if isinstance(error, SsoError) and error.details:
        context["details"] = error.details
    return redact_secrets(context)


def log_error(request: Any, error: BaseException, kind: Optional[ErrorKind] = None) -> ErrorKind:
    """Log an error with structured context at the level its kind calls for."""
    kind = kind or classify(error)
    info = get_error_info(kind)
    context = create_error_context(request, error, kind)
    logger.log(
        info.log_level,
        f"Error occurred: {json.dumps(context, default=str)}",
        exc_info=error if kind == ErrorKind.UNKNOWN else None,
    )
    return kind


_AUTH_EVENT_LEVELS = {
    "login-failure": logging.WARNING,
    "session-invalid": logging.WARNING,
    "oauth-failure": logging.WARNING,
    "csrf-violation": logging.WARNING,
    "unauthorized-access": logging.WARNING,
    "rate-limited": logging.WARNING,
}


def log_auth_event(event: str, request: Any = None, **data: Any) -> None:
    """Log an authentication event as a JSON payload on the audit logger."""
    context = {"timestamp": _timestamp(), "event_type": event}
    context.update(request_context(request))
    if data:
        context["data"] = data
    level = _AUTH_EVENT_LEVELS.get(event, logging.INFO)
    audit_logger.log(level, json.dumps(redact_secrets(context), default=str))


def error_payload(kind: ErrorKind, details: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Structured error body for API callers."""
    info = get_error_info(kind)
    payload: dict[str, Any] = {
        "error": info.code,
        "kind": kind.value,
        "message": info.message,
        "timestamp": _timestamp(),
    }
    if details:
        payload["details"] = details
    return payload
