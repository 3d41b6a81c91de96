"""
Tests for CSRF token issuance and validation.
"""

import pytest

from sso_web_app.csrf import CSRF_SCOPE_KEY, CsrfGuard, requires_check


class TestRequiresCheck:
    """Test method classification"""

    @pytest.mark.parametrize("method", ["POST", "put", "Patch", "delete"])
    def test_state_changing_methods(self, method):
        assert requires_check(method)

    @pytest.mark.parametrize("method", ["GET", "head", "OPTIONS", ""])
    def test_safe_methods(self, method):
        assert not requires_check(method)


class TestCsrfGuard:
    """Test token lifecycle"""

    def test_token_minted_once_and_stable(self):
        guard = CsrfGuard()
        scope = {}

        token = guard.token_for(scope)

        assert len(token) >= 43
        assert scope[CSRF_SCOPE_KEY] == token
        assert guard.token_for(scope) == token

    def test_rotate_replaces_token(self):
        guard = CsrfGuard()
        scope = {}
        token = guard.token_for(scope)

        assert guard.rotate(scope) != token
        assert not guard.validate(scope, token)

    def test_matching_token_accepted(self):
        guard = CsrfGuard()
        scope = {}
        token = guard.token_for(scope)

        assert guard.validate(scope, token)

    @pytest.mark.parametrize("presented", [None, "", "wrong"])
    def test_bad_token_rejected(self, presented):
        guard = CsrfGuard()
        scope = {}
        guard.token_for(scope)

        assert not guard.validate(scope, presented)

    def test_no_token_in_scope_rejected(self):
        assert not CsrfGuard().validate({}, "anything")

    def test_bypass_outside_production(self):
        guard = CsrfGuard(bypass_token="test-bypass", production=False)
        assert guard.validate({}, "test-bypass")

    def test_bypass_ignored_in_production(self):
        guard = CsrfGuard(bypass_token="test-bypass", production=True)
        assert guard.bypass_token is None
        assert not guard.validate({}, "test-bypass")
