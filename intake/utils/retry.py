from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from core.errors import ConcurrentModificationError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int,
    label: str,
) -> T:
    """Run ``operation``; re-run it up to ``retries`` more times on a version conflict.

    The final conflict propagates so callers can report a transient failure.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except ConcurrentModificationError:
            if attempt >= retries:
                LOGGER.error("Conflict retries exhausted. target=%s attempts=%s", label, attempt + 1)
                raise
            attempt += 1
            LOGGER.warning("Version conflict, retrying. target=%s attempt=%s", label, attempt)
