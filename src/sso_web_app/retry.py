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
Retry wrapper for fallible outbound operations.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

from .errors import ErrorKind, classify, is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Never retried, whatever the predicate says.
NON_RETRYABLE_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.AUTHORIZATION})


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    backoff: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Execute an operation, retrying failures that are worth retrying.

    Args:
        operation: Zero-argument coroutine function to run
        max_attempts: Total number of attempts including the first one
        base_delay: Seconds to wait before the second attempt
        should_retry: Predicate deciding whether an error is retryable;
            defaults to "transient network failure"
        backoff: Delay multiplier applied after every retry (1.0 keeps the delay fixed)
        sleep: Awaitable sleep function, replaceable in tests

    Returns:
        The operation's result

    Raises:
        The last failure once attempts are exhausted or the failure is not retryable
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    predicate = should_retry or is_transient
    delay = base_delay
    attempt = 1
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = classify(e) not in NON_RETRYABLE_KINDS and predicate(e)
            if attempt >= max_attempts or not retryable:
                raise
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed, retrying in {delay:.2f}s: "
                f"{type(e).__name__}: {e}"
            )
            await sleep(delay)
            delay *= backoff
            attempt += 1
