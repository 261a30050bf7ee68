from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from .config import _parse_non_negative_int
from .models import _now_ms

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_MAX_AGE_S = 24 * 60 * 60


@dataclass(frozen=True)
class RetentionPolicy:
    message_max_age_s: int = DEFAULT_MESSAGE_MAX_AGE_S
    sweep_interval_s: int = 60

    @property
    def enabled(self) -> bool:
        return self.message_max_age_s > 0

    @property
    def message_max_age_ms(self) -> int:
        return max(self.message_max_age_s, 0) * 1000


def load_retention_policy_from_env() -> RetentionPolicy:
    max_age_s = _parse_non_negative_int("CHANNELSYNC_RETENTION_MAX_AGE_S", DEFAULT_MESSAGE_MAX_AGE_S)
    sweep_interval_s = _parse_non_negative_int("CHANNELSYNC_RETENTION_SWEEP_INTERVAL_S", 60)
    return RetentionPolicy(message_max_age_s=max_age_s, sweep_interval_s=max(1, sweep_interval_s))


class RetentionSweeper:
    """Periodically deletes messages older than the policy allows."""

    def __init__(self, store, policy: RetentionPolicy, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self.policy = policy
        self._now = now_func
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> int:
        if not self.policy.enabled:
            return 0
        cutoff_ms = self._now() - self.policy.message_max_age_ms
        removed = await self._store.delete_messages_before(cutoff_ms)
        if removed:
            logger.info("retention removed %d message(s) older than %ds", removed, self.policy.message_max_age_s)
        return removed

    def start(self) -> None:
        if self._task is None and self.policy.enabled:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.policy.sweep_interval_s)
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("retention sweep failed")
        except asyncio.CancelledError:
            return
