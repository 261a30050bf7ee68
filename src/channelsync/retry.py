from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Type, TypeVar

from .errors import ChatError, LoadError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(
    operation: Callable[[], Awaitable[T]],
    *,
    what: str,
    attempts: int = 3,
    timeout_s: float = 10.0,
    delay_s: float = 0.25,
    error: Type[ChatError] = LoadError,
) -> T:
    """Run ``operation`` with a per-attempt timeout and a bounded number of retries.

    Validation failures are not retried. Anything else is retried up to
    ``attempts`` times and then reported as ``error``.
    """

    last_exc: BaseException | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout_s)
        except ValidationError:
            raise
        except asyncio.TimeoutError as exc:
            last_exc = exc
            logger.warning("%s timed out after %.1fs (attempt %d/%d)", what, timeout_s, attempt, attempts)
        except Exception as exc:
            last_exc = exc
            logger.warning("%s failed (attempt %d/%d): %s", what, attempt, attempts, exc)
        if attempt < attempts:
            await asyncio.sleep(delay_s)
    if isinstance(last_exc, asyncio.TimeoutError):
        raise error(f"{what} timed out") from last_exc
    raise error(f"{what} failed: {last_exc}") from last_exc
