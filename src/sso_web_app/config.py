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
Configuration module for the SSO web application
Centralizes all configuration values and environment variables
"""

import os
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

DEFAULT_SESSION_SECRET = "change-me-in-production"
MIN_SESSION_SECRET_LENGTH = 32


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AppConfig:
    """Configuration for the web application"""

    # Server Configuration
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    base_url: str = field(
        default_factory=lambda: os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")
    )
    app_env: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Storage Configuration
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./sso_web_app.db")
    )

    # Session Configuration
    session_secret: str = field(
        default_factory=lambda: os.getenv("SESSION_SECRET", DEFAULT_SESSION_SECRET)
    )
    session_ttl_hours: float = field(
        default_factory=lambda: float(os.getenv("SESSION_TTL_HOURS", "24"))
    )
    session_cleanup_interval: float = field(
        default_factory=lambda: float(os.getenv("SESSION_CLEANUP_INTERVAL", "3600"))
    )
    cookie_secure: bool = field(default_factory=lambda: _env_bool("COOKIE_SECURE"))

    # CSRF Configuration
    csrf_test_bypass: Optional[str] = field(
        default_factory=lambda: os.getenv("CSRF_TEST_BYPASS") or None
    )

    # Provider Credentials
    microsoft_client_id: str = field(default_factory=lambda: os.getenv("MICROSOFT_CLIENT_ID", ""))
    microsoft_client_secret: str = field(
        default_factory=lambda: os.getenv("MICROSOFT_CLIENT_SECRET", "")
    )
    github_client_id: str = field(default_factory=lambda: os.getenv("GITHUB_CLIENT_ID", ""))
    github_client_secret: str = field(
        default_factory=lambda: os.getenv("GITHUB_CLIENT_SECRET", "")
    )

    # Outbound HTTP
    http_connect_timeout: float = field(
        default_factory=lambda: float(os.getenv("HTTP_CONNECT_TIMEOUT", "5"))
    )
    http_read_timeout: float = field(
        default_factory=lambda: float(os.getenv("HTTP_READ_TIMEOUT", "10"))
    )

    # Resilience
    retry_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    )
    retry_base_delay: float = field(
        default_factory=lambda: float(os.getenv("RETRY_BASE_DELAY", "1.0"))
    )
    breaker_failure_threshold: int = field(
        default_factory=lambda: int(os.getenv("BREAKER_FAILURE_THRESHOLD", "5"))
    )
    breaker_reset_timeout: float = field(
        default_factory=lambda: float(os.getenv("BREAKER_RESET_TIMEOUT", "60"))
    )

    # Rate Limiting (login initiations per client per minute)
    login_rate_limit: int = field(default_factory=lambda: int(os.getenv("LOGIN_RATE_LIMIT", "30")))
    rate_limit_window: int = 60
    rate_limit_max_clients: int = 10000

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def session_ttl_seconds(self) -> int:
        return int(self.session_ttl_hours * 3600)

    def validate(self) -> list[str]:
        """Return a list of configuration problems; empty when the config is usable."""
        problems = []
        for provider in ("microsoft", "github"):
            if not getattr(self, f"{provider}_client_id") or not getattr(
                self, f"{provider}_client_secret"
            ):
                problems.append(f"Missing {provider.upper()}_CLIENT_ID or {provider.upper()}_CLIENT_SECRET")
        if self.session_secret == DEFAULT_SESSION_SECRET:
            problems.append("SESSION_SECRET is still the default value")
        elif len(self.session_secret) < MIN_SESSION_SECRET_LENGTH:
            problems.append(
                f"SESSION_SECRET should be at least {MIN_SESSION_SECRET_LENGTH} characters"
            )
        if not 1 <= self.port <= 65535:
            problems.append(f"PORT out of range: {self.port}")
        parsed = urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            problems.append(f"BASE_URL is not an absolute http(s) URL: {self.base_url}")
        if self.session_ttl_hours <= 0:
            problems.append("SESSION_TTL_HOURS must be positive")
        if self.retry_max_attempts < 1:
            problems.append("RETRY_MAX_ATTEMPTS must be at least 1")
        if self.csrf_test_bypass and self.is_production:
            problems.append("CSRF_TEST_BYPASS is ignored in production and should be unset")
        return problems

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (secrets omitted)"""
        return {
            "host": self.host,
            "port": self.port,
            "base_url": self.base_url,
            "app_env": self.app_env,
            "database_url": self.database_url.split("@")[-1],
            "session_ttl_hours": self.session_ttl_hours,
            "session_cleanup_interval": self.session_cleanup_interval,
            "cookie_secure": self.cookie_secure,
            "microsoft_configured": bool(self.microsoft_client_id and self.microsoft_client_secret),
            "github_configured": bool(self.github_client_id and self.github_client_secret),
            "http_connect_timeout": self.http_connect_timeout,
            "http_read_timeout": self.http_read_timeout,
            "retry_max_attempts": self.retry_max_attempts,
            "breaker_failure_threshold": self.breaker_failure_threshold,
            "breaker_reset_timeout": self.breaker_reset_timeout,
            "login_rate_limit": self.login_rate_limit,
        }


def load_config(env_file: Optional[str] = None) -> AppConfig:
    """Load a .env file (if present) into the environment and build a fresh config."""
    load_dotenv(env_file)
    return AppConfig()


# Global configuration instance
config = AppConfig()
