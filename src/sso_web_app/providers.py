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
Provider registry: static per-provider OAuth2 configuration and the
per-provider strategies that differ between identity providers.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from .config import AppConfig
from .errors import ConfigurationError, UnsupportedProviderError
from .models import NormalizedProfile, Provider

logger = logging.getLogger(__name__)

USER_AGENT = "sso-web-app"


@dataclass(frozen=True)
class ProviderConfig:
    """Static OAuth2 configuration of one identity provider."""

    provider: Provider
    authorize_url: str
    token_url: str
    user_info_url: str
    scope: str
    client_id: str
    client_secret: str
    redirect_uri: str
    emails_url: Optional[str] = None

    def is_complete(self) -> bool:
        """True only when every required field is non-empty."""
        return all(
            value and value.strip()
            for value in (
                self.authorize_url,
                self.token_url,
                self.user_info_url,
                self.scope,
                self.client_id,
                self.client_secret,
                self.redirect_uri,
            )
        )


def _first_present(data: dict[str, Any], *keys: str) -> Optional[str]:
    """First value among keys that is a non-blank string."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _provider_user_id(data: dict[str, Any]) -> Optional[str]:
    value = data.get("id")
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


class ProviderStrategy(Protocol):
    """Operations that differ per provider."""

    provider: Provider

    def build_auth_headers(self, access_token: str) -> dict[str, str]: ...

    def normalize_profile(self, raw: dict[str, Any]) -> Optional[NormalizedProfile]: ...

    def needs_enrichment(self, raw: dict[str, Any]) -> bool: ...

    def select_email(self, emails: Any) -> Optional[str]: ...


class MicrosoftStrategy:
    """Microsoft Graph: bearer tokens, displayName / userPrincipalName fallbacks."""

    provider = Provider.MICROSOFT

    def build_auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    def normalize_profile(self, raw: dict[str, Any]) -> Optional[NormalizedProfile]:
        user_id = _provider_user_id(raw)
        display_name = _first_present(raw, "displayName", "userPrincipalName")
        if user_id is None or display_name is None:
            return None
        return NormalizedProfile(
            provider=self.provider,
            provider_user_id=user_id,
            display_name=display_name,
            email=_first_present(raw, "mail", "userPrincipalName"),
        )

    def needs_enrichment(self, raw: dict[str, Any]) -> bool:
        return False

    def select_email(self, emails: Any) -> Optional[str]:
        return None


class GitHubStrategy:
    """GitHub REST API: ``token`` scheme, mandatory User-Agent, email lookup."""

    provider = Provider.GITHUB

    def build_auth_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"token {access_token}",
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
        }

    def normalize_profile(self, raw: dict[str, Any]) -> Optional[NormalizedProfile]:
        user_id = _provider_user_id(raw)
        display_name = _first_present(raw, "name", "login")
        if user_id is None or display_name is None:
            return None
        return NormalizedProfile(
            provider=self.provider,
            provider_user_id=user_id,
            display_name=display_name,
            email=_first_present(raw, "email"),
        )

    def needs_enrichment(self, raw: dict[str, Any]) -> bool:
        # Private emails come back as null on /user
        return not _first_present(raw, "email")

    def select_email(self, emails: Any) -> Optional[str]:
        """Pick the primary address, else the first one, else None."""
        if not isinstance(emails, list):
            return None
        entries = [e for e in emails if isinstance(e, dict) and _first_present(e, "email")]
        if not entries:
            return None
        for entry in entries:
            if entry.get("primary") is True:
                return entry["email"].strip()
        return entries[0]["email"].strip()


STRATEGIES: dict[Provider, ProviderStrategy] = {
    Provider.MICROSOFT: MicrosoftStrategy(),
    Provider.GITHUB: GitHubStrategy(),
}


class ProviderRegistry:
    """Lookup table of provider configurations and strategies."""

    def __init__(
        self,
        configs: dict[Provider, ProviderConfig],
        strategies: Optional[dict[Provider, ProviderStrategy]] = None,
    ):
        self._configs = dict(configs)
        self._strategies = dict(strategies or STRATEGIES)

    def lookup(self, provider: Any) -> Optional[ProviderConfig]:
        parsed = Provider.parse(provider)
        if parsed is None:
            return None
        return self._configs.get(parsed)

    def is_supported(self, provider: Any) -> bool:
        return self.lookup(provider) is not None

    def supported_providers(self) -> list[Provider]:
        return [p for p in Provider if p in self._configs]

    def strategy(self, provider: Provider) -> ProviderStrategy:
        return self._strategies[provider]

    def require(self, provider: Any) -> ProviderConfig:
        """
        Resolve a usable provider configuration.

        Raises:
            UnsupportedProviderError: If the provider is unknown
            ConfigurationError: If the provider is known but its config is incomplete
        """
        provider_config = self.lookup(provider)
        if provider_config is None:
            raise UnsupportedProviderError(provider)
        if not provider_config.is_complete():
            raise ConfigurationError(
                f"OAuth provider {provider_config.provider.value} is not fully configured",
                details={"provider": provider_config.provider.value},
            )
        return provider_config


def build_registry(app_config: AppConfig) -> ProviderRegistry:
    """Build the registry for Microsoft 365 and GitHub from application config."""
    base_url = app_config.base_url.rstrip("/")
    configs = {
        Provider.MICROSOFT: ProviderConfig(
            provider=Provider.MICROSOFT,
            authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
            user_info_url="https://graph.microsoft.com/v1.0/me",
            scope="openid profile email",
            client_id=app_config.microsoft_client_id,
            client_secret=app_config.microsoft_client_secret,
            redirect_uri=f"{base_url}/auth/microsoft/callback",
        ),
        Provider.GITHUB: ProviderConfig(
            provider=Provider.GITHUB,
            authorize_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            user_info_url="https://api.github.com/user",
            scope="user:email",
            client_id=app_config.github_client_id,
            client_secret=app_config.github_client_secret,
            redirect_uri=f"{base_url}/auth/github/callback",
            emails_url="https://api.github.com/user/emails",
        ),
    }
    for provider, provider_config in configs.items():
        if not provider_config.is_complete():
            logger.warning(f"OAuth provider {provider.value} is missing client credentials")
    return ProviderRegistry(configs)
