from __future__ import annotations

from typing import Dict, List

from .config import ClientConfig
from .errors import ValidationError
from .models import CHANNELS, Channel
from .retry import bounded
from .store import Order, Store


class ChannelDirectory:
    """Loads the channel list and tracks the selected channel."""

    def __init__(self, store: Store, config: ClientConfig | None = None) -> None:
        self._store = store
        self.config = config or ClientConfig()
        self._channels: List[Channel] = []
        self._by_id: Dict[str, Channel] = {}
        self._selected_id: str | None = None

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels)

    @property
    def selected(self) -> Channel | None:
        if self._selected_id is None:
            return None
        return self._by_id.get(self._selected_id)

    @property
    def selected_id(self) -> str | None:
        return self._selected_id

    def get(self, channel_id: str) -> Channel | None:
        return self._by_id.get(channel_id)

    async def load_all(self) -> List[Channel]:
        """Fetch every channel ordered by name; default the selection to the first one."""

        channels = await bounded(
            lambda: self._store.query(CHANNELS, order=Order("name")),
            what="channel directory load",
            attempts=self.config.load_attempts,
            timeout_s=self.config.load_timeout_s,
            delay_s=self.config.retry_delay_s,
        )
        self._channels = list(channels)
        self._by_id = {channel.id: channel for channel in self._channels}
        if self._selected_id not in self._by_id:
            self._selected_id = self._channels[0].id if self._channels else None
        return self.channels

    def select(self, channel_id: str) -> bool:
        """Make ``channel_id`` active. Returns False when it already was."""

        if channel_id not in self._by_id:
            raise ValidationError(f"unknown channel: {channel_id}")
        if channel_id == self._selected_id:
            return False
        self._selected_id = channel_id
        return True

    def reset(self) -> None:
        self._channels = []
        self._by_id = {}
        self._selected_id = None
