"""
Parallel reads with per-call fallback.

Chain view calls used for UX hints (fee, paused flag, balance, supply) are
issued together; each one either yields its value or, after its retries are
exhausted, its declared default. One failing read never affects the others.

Usage:
    results = await read_all(
        FallbackRead("fee", contract.minting_fee, default=FALLBACK_FEE),
        FallbackRead("paused", contract.is_paused, default=False),
    )
    fee = results["fee"].value
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("evermark-portal.fanout")

DEFAULT_ATTEMPTS = 2
RETRY_DELAY = 0.5


class FallbackRead:
    """A named read, its safe default, and how many times to try it."""

    def __init__(
        self,
        name: str,
        read: Callable[[], Awaitable[Any]],
        default: Any = None,
        attempts: int = DEFAULT_ATTEMPTS,
    ):
        self.name = name
        self.read = read
        self.default = default
        self.attempts = max(1, attempts)


class ReadResult:
    def __init__(self, name: str, value: Any, used_fallback: bool = False, error: Optional[str] = None):
        self.name = name
        self.value = value
        self.used_fallback = used_fallback
        self.error = error

    def __repr__(self) -> str:
        return f"ReadResult({self.name}={self.value!r}, fallback={self.used_fallback})"


async def _run(item: FallbackRead, retry_delay: float) -> ReadResult:
    last_error = ""
    for attempt in range(item.attempts):
        try:
            return ReadResult(item.name, await item.read())
        except Exception as exc:
            last_error = str(exc) or type(exc).__name__
            logger.warning(
                "Read %s attempt %d/%d failed: %s",
                item.name, attempt + 1, item.attempts, last_error,
            )
        if attempt < item.attempts - 1:
            await asyncio.sleep(retry_delay)
    return ReadResult(item.name, item.default, used_fallback=True, error=last_error)


async def read_all(*reads: FallbackRead, retry_delay: float = RETRY_DELAY) -> dict[str, ReadResult]:
    """Run every read concurrently; never raises for an individual read failure."""
    results = await asyncio.gather(*(_run(item, retry_delay) for item in reads))
    return {result.name: result for result in results}
