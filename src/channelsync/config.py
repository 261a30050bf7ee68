from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ClientConfig:
    backlog_limit: int = 50
    max_codename_length: int = 32
    max_message_length: int = 2000
    load_timeout_s: float = 10.0
    load_attempts: int = 3
    retry_delay_s: float = 0.25
    heartbeat_interval_s: float = 30.0


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_client_config_from_env() -> ClientConfig:
    defaults = ClientConfig()
    return ClientConfig(
        backlog_limit=max(1, _parse_non_negative_int("CHANNELSYNC_BACKLOG_LIMIT", defaults.backlog_limit)),
        max_codename_length=defaults.max_codename_length,
        max_message_length=max(
            1, _parse_non_negative_int("CHANNELSYNC_MAX_MESSAGE_LENGTH", defaults.max_message_length)
        ),
        load_timeout_s=_parse_positive_float("CHANNELSYNC_LOAD_TIMEOUT_S", defaults.load_timeout_s),
        load_attempts=max(1, _parse_non_negative_int("CHANNELSYNC_LOAD_ATTEMPTS", defaults.load_attempts)),
        retry_delay_s=defaults.retry_delay_s,
        heartbeat_interval_s=_parse_positive_float(
            "CHANNELSYNC_HEARTBEAT_INTERVAL_S", defaults.heartbeat_interval_s
        ),
    )
