"""
CSRF token issuance and validation on the request-scoped session store.
"""

import hmac
import logging
import secrets
from collections.abc import MutableMapping
from typing import Any, Optional

logger = logging.getLogger(__name__)

CSRF_SCOPE_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"
CSRF_FIELDS = ("csrf_token", "csrf-token")
TOKEN_BYTES = 32
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def requires_check(method: str) -> bool:
    """Whether a request method has state-changing semantics."""
    return (method or "").upper() in STATE_CHANGING_METHODS


class CsrfGuard:
    """
    Per-session CSRF tokens.

    The token lives in the request-scoped store and stays stable until
    rotated. A bypass value, for test harnesses only, is honoured solely
    outside production.
    """

    def __init__(self, bypass_token: Optional[str] = None, production: bool = True):
        self.production = production
        self.bypass_token = None if production else (bypass_token or None)
        if bypass_token and production:
            logger.warning("CSRF bypass token configured in production; ignoring it")

    def token_for(self, scope: MutableMapping[str, Any]) -> str:
        token = scope.get(CSRF_SCOPE_KEY)
        if not isinstance(token, str) or not token:
            token = secrets.token_urlsafe(TOKEN_BYTES)
            scope[CSRF_SCOPE_KEY] = token
        return token

    def rotate(self, scope: MutableMapping[str, Any]) -> str:
        token = secrets.token_urlsafe(TOKEN_BYTES)
        scope[CSRF_SCOPE_KEY] = token
        return token

    def validate(self, scope: MutableMapping[str, Any], presented: Optional[str]) -> bool:
        if not presented:
            return False
        if self.bypass_token and hmac.compare_digest(
            presented.encode("utf-8"), self.bypass_token.encode("utf-8")
        ):
            return True
        expected = scope.get(CSRF_SCOPE_KEY)
        if not isinstance(expected, str) or not expected:
            return False
        return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
