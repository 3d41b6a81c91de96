"""
Tests for error classification, redaction and structured logging.
"""

import json
import logging
from unittest.mock import Mock

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from sso_web_app.errors import (
    ERROR_INFO,
    CircuitBreakerOpenError,
    CsrfError,
    ErrorKind,
    InvalidStateError,
    ProviderServerError,
    SecurityError,
    StorageError,
    classify,
    error_payload,
    get_error_info,
    is_transient,
    log_auth_event,
    log_error,
    redact_secrets,
)


class TestClassify:
    """Test error classification"""

    @pytest.mark.parametrize(
        "error,kind",
        [
            (InvalidStateError("state mismatch"), ErrorKind.OAUTH),
            (CsrfError("missing"), ErrorKind.CSRF),
            (StorageError("write failed"), ErrorKind.DATABASE),
            (OperationalError("SELECT 1", {}, Exception("locked")), ErrorKind.DATABASE),
            (SecurityError("nope"), ErrorKind.AUTHORIZATION),
            (PermissionError("nope"), ErrorKind.AUTHORIZATION),
            (httpx.ConnectError("refused"), ErrorKind.NETWORK),
            (httpx.ReadTimeout("slow"), ErrorKind.NETWORK),
            (TimeoutError(), ErrorKind.NETWORK),
            (ConnectionRefusedError(), ErrorKind.NETWORK),
            (OSError("broken pipe"), ErrorKind.NETWORK),
            (CircuitBreakerOpenError("open"), ErrorKind.NETWORK),
        ],
    )
    def test_typed_errors(self, error, kind):
        assert classify(error) == kind

    @pytest.mark.parametrize(
        "message,kind",
        [
            ("OAuth token exchange failed", ErrorKind.OAUTH),
            ("AUTHENTICATION broke", ErrorKind.OAUTH),
            ("Session store unreachable", ErrorKind.SESSION),
            ("CSRF mismatch", ErrorKind.CSRF),
            ("bad Config value", ErrorKind.CONFIGURATION),
            ("Validation failed", ErrorKind.VALIDATION),
            ("invalid input", ErrorKind.VALIDATION),
            ("something else entirely", ErrorKind.UNKNOWN),
        ],
    )
    def test_keyword_fallback(self, message, kind):
        """Generic runtime errors are matched case-insensitively on their message"""
        assert classify(RuntimeError(message)) == kind

    def test_keyword_order(self):
        """oauth/auth is checked before session"""
        assert classify(RuntimeError("auth session invalid")) == ErrorKind.OAUTH

    def test_transient_only_for_network(self):
        assert is_transient(httpx.ConnectError("x"))
        assert not is_transient(CircuitBreakerOpenError("open"))
        assert not is_transient(StorageError("x"))

    def test_provider_server_error_is_not_retried(self):
        error = ProviderServerError("github:token", 503, "unavailable")
        assert classify(error) == ErrorKind.OAUTH
        assert not is_transient(error)
        assert error.details == {"status": 503, "body": "unavailable"}


class TestErrorInfo:
    """Test the kind table"""

    @pytest.mark.parametrize(
        "kind,status",
        [
            (ErrorKind.DATABASE, 500),
            (ErrorKind.NETWORK, 503),
            (ErrorKind.AUTHORIZATION, 403),
            (ErrorKind.OAUTH, 401),
            (ErrorKind.VALIDATION, 400),
            (ErrorKind.NOT_FOUND, 404),
            (ErrorKind.SESSION, 401),
            (ErrorKind.CSRF, 403),
            (ErrorKind.CONFIGURATION, 500),
            (ErrorKind.UNKNOWN, 500),
        ],
    )
    def test_statuses(self, kind, status):
        assert get_error_info(kind).status == status

    def test_every_kind_has_info(self):
        assert set(ERROR_INFO) == set(ErrorKind)

    def test_error_payload_shape(self):
        payload = error_payload(ErrorKind.CSRF)
        assert payload["error"] == "CSRF_ERROR"
        assert payload["kind"] == "csrf"
        assert payload["message"] == "CSRF token validation failed"
        assert "timestamp" in payload
        assert "details" not in payload


class TestRedaction:
    """Test secret masking in log payloads"""

    def test_secrets_masked(self):
        redacted = redact_secrets(
            {
                "access_token": "gho_abcdefghijklmnop",
                "state": "short",
                "provider": "github",
                "nested": {"client_secret": "abcdefghijkl"},
            }
        )
        assert redacted["access_token"] == "gho_..."
        assert redacted["state"] == "[REDACTED]"
        assert redacted["provider"] == "github"
        assert redacted["nested"]["client_secret"] == "abcd..."

    def test_empty_values_left_alone(self):
        assert redact_secrets({"code": None}) == {"code": None}


class TestStructuredLogging:
    """Test error and audit logging"""

    def _request(self):
        request = Mock()
        request.url.path = "/auth/github/callback"
        request.method = "GET"
        request.headers = {"user-agent": "pytest"}
        request.client.host = "10.0.0.1"
        request.state.user = None
        return request

    def test_log_error_uses_kind_level(self, caplog):
        with caplog.at_level(logging.WARNING, logger="sso_web_app.errors"):
            kind = log_error(self._request(), CsrfError("bad token"))

        assert kind == ErrorKind.CSRF
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert '"error_code": "CSRF_ERROR"' in record.getMessage()
        assert '"remote_addr": "10.0.0.1"' in record.getMessage()

    def test_auth_event_is_json_on_audit_logger(self, caplog):
        with caplog.at_level(logging.INFO, logger="sso_web_app.audit"):
            log_auth_event("oauth-failure", self._request(), provider="github", code="abcdefghijk")

        record = caplog.records[-1]
        assert record.name == "sso_web_app.audit"
        assert record.levelno == logging.WARNING
        payload = json.loads(record.getMessage())
        assert payload["event_type"] == "oauth-failure"
        assert payload["data"]["provider"] == "github"
        assert payload["data"]["code"] == "abcd..."

    def test_auth_event_without_request(self, caplog):
        with caplog.at_level(logging.INFO, logger="sso_web_app.audit"):
            log_auth_event("session-created", user_id="u1")

        assert json.loads(caplog.records[-1].getMessage())["data"] == {"user_id": "u1"}
