"""
Input validation for OAuth callback parameters.
Handles format checks and string sanitizing of untrusted query values.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

from .models import Provider

MAX_CODE_LENGTH = 512
MIN_STATE_LENGTH = 40
MAX_STATE_LENGTH = 256
MAX_ERROR_LENGTH = 256

_CODE_PATTERN = re.compile(r"[A-Za-z0-9._-]+")
_STATE_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
_TAG_PATTERN = re.compile(r"<[^>]*>")
_UNSAFE_CHARS = re.compile(r"[<>\"'&]")
_CONTROL_CHARS = re.compile(r"[\r\n\t]")


def sanitize_string(value: Optional[str]) -> Optional[str]:
    """Strip markup, injection characters and control characters from a string."""
    if value is None:
        return None
    text = _TAG_PATTERN.sub("", str(value))
    text = _UNSAFE_CHARS.sub("", text)
    text = _CONTROL_CHARS.sub(" ", text)
    return text.strip()


@dataclass
class CallbackParams:
    """Callback query parameters after format checks."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


class OAuthParamValidator:
    """Format checks for values arriving on the OAuth routes."""

    @staticmethod
    def validate_provider(provider: Any) -> bool:
        return Provider.parse(provider) is not None

    @staticmethod
    def validate_code(code: Optional[str]) -> bool:
        return bool(
            isinstance(code, str)
            and _CODE_PATTERN.fullmatch(code)
            and len(code) <= MAX_CODE_LENGTH
        )

    @staticmethod
    def validate_state(state: Optional[str]) -> bool:
        return bool(
            isinstance(state, str)
            and MIN_STATE_LENGTH <= len(state) <= MAX_STATE_LENGTH
            and _STATE_PATTERN.fullmatch(state)
        )

    @classmethod
    def parse_callback(cls, params: Mapping[str, str]) -> tuple[bool, CallbackParams]:
        """
        Read callback parameters.

        ``code`` and ``state`` are passed on exactly as delivered, never
        trimmed or rewritten; only the provider's error text is sanitized.

        Args:
            params: Raw query parameters

        Returns:
            Tuple of (code_is_valid, params). The code is invalid only when it
            is present, non-blank and malformed; it is then left out of params.
            A malformed state is dropped, which later fails state validation.
        """
        code = params.get("code")
        if code is not None and not code.strip():
            code = None
        code_valid = code is None or cls.validate_code(code)
        state = params.get("state")
        error = sanitize_string(params.get("error")) or None
        description = sanitize_string(params.get("error_description")) or None
        return code_valid, CallbackParams(
            code=code if code_valid else None,
            state=state if cls.validate_state(state) else None,
            error=error[:MAX_ERROR_LENGTH] if error else None,
            error_description=description[:MAX_ERROR_LENGTH] if description else None,
        )
