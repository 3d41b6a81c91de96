"""
Tests for OAuth parameter validation.
"""

import pytest

from sso_web_app.oauth import generate_state
from sso_web_app.validation import OAuthParamValidator, sanitize_string


class TestSanitizeString:
    def test_strips_markup_and_controls(self):
        assert sanitize_string("<b>hi</b>\r\nthere & 'you'") == "hi  there  you"

    def test_none(self):
        assert sanitize_string(None) is None


class TestOAuthParamValidator:
    """Test callback parameter checks"""

    @pytest.mark.parametrize("code", ["c1", "M.R3_BAY.abc-123", "x" * 512])
    def test_valid_codes(self, code):
        assert OAuthParamValidator.validate_code(code)

    @pytest.mark.parametrize("code", ["", "a b", "<script>", "x" * 513, "c1;drop", None])
    def test_invalid_codes(self, code):
        assert not OAuthParamValidator.validate_code(code)

    def test_generated_state_is_valid(self):
        assert OAuthParamValidator.validate_state(generate_state())

    @pytest.mark.parametrize("state", ["short", "a" * 257, "a" * 39 + "!", None])
    def test_invalid_states(self, state):
        assert not OAuthParamValidator.validate_state(state)

    def test_provider(self):
        assert OAuthParamValidator.validate_provider("GitHub")
        assert not OAuthParamValidator.validate_provider("gitlab")

    def test_parse_callback_rejects_malformed_code(self):
        valid, params = OAuthParamValidator.parse_callback({"code": "<script>alert(1)</script>"})
        assert not valid

    def test_parse_callback_drops_malformed_state(self):
        valid, params = OAuthParamValidator.parse_callback({"code": "c1", "state": "s1"})
        assert valid
        assert params.code == "c1"
        assert params.state is None

    def test_parse_callback_keeps_provider_error(self):
        state = generate_state()
        valid, params = OAuthParamValidator.parse_callback(
            {"state": state, "error": "access_denied", "error_description": "<i>User declined</i>"}
        )
        assert valid
        assert params.code is None
        assert params.state == state
        assert params.error == "access_denied"
        assert params.error_description == "User declined"

    def test_blank_code_is_absent_not_malformed(self):
        valid, params = OAuthParamValidator.parse_callback({"code": "   "})
        assert valid
        assert params.code is None

    @pytest.mark.parametrize("suffix", [" ", "\n", "<i>", "&"])
    def test_parse_callback_never_repairs_state(self, suffix):
        state = generate_state()
        valid, params = OAuthParamValidator.parse_callback({"code": "c1", "state": state + suffix})
        assert valid
        assert params.state is None

    def test_parse_callback_passes_state_through(self):
        state = generate_state()
        valid, params = OAuthParamValidator.parse_callback({"code": "c1", "state": state})
        assert params.state is state

    def test_padded_code_is_malformed(self):
        valid, params = OAuthParamValidator.parse_callback({"code": " c1", "state": generate_state()})
        assert not valid
        assert params.code is None

    def test_malformed_code_keeps_state_for_comparison(self):
        state = generate_state()
        valid, params = OAuthParamValidator.parse_callback({"code": "<script>", "state": state})
        assert not valid
        assert params.state == state
