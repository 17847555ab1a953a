from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping

DEFAULT_API_URL = "http://localhost:8000/api/v1"
DEFAULT_SOCKET_URL = "ws://localhost:8000/ws"


@dataclass(frozen=True)
class ClientConfig:
    api_url: str = DEFAULT_API_URL
    socket_url: str = DEFAULT_SOCKET_URL
    request_timeout_s: float = 30.0
    upload_timeout_s: float = 60.0
    # Acks are always bounded; a stalled ack fails instead of pending forever.
    ack_timeout_s: float = 10.0
    handshake_timeout_s: float = 10.0
    heartbeat_s: float = 20.0
    reconnect_attempts: int = 5
    reconnect_delay_s: float = 1.0
    reconnect_delay_max_s: float = 5.0
    typing_timeout_s: float = 2.0
    page_size: int = 50
    conversations_page_size: int = 20
    near_bottom_threshold_px: int = 100

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ClientConfig":
        """Build a config from ``RIDEWAY_*`` environment variables."""

        env = os.environ if environ is None else environ
        config = cls(
            api_url=env.get("RIDEWAY_API_URL", DEFAULT_API_URL),
            socket_url=env.get("RIDEWAY_SOCKET_URL", DEFAULT_SOCKET_URL),
        )
        overrides: dict[str, float] = {}
        for env_key, field_name in (
            ("RIDEWAY_REQUEST_TIMEOUT", "request_timeout_s"),
            ("RIDEWAY_UPLOAD_TIMEOUT", "upload_timeout_s"),
            ("RIDEWAY_ACK_TIMEOUT", "ack_timeout_s"),
        ):
            raw = env.get(env_key)
            if raw is None or not raw.strip():
                continue
            try:
                value = float(raw)
            except ValueError as exc:
                raise ValueError(f"{env_key} must be a number, got {raw!r}") from exc
            if value <= 0:
                raise ValueError(f"{env_key} must be positive")
            overrides[field_name] = value
        return replace(config, **overrides) if overrides else config

    def api_endpoint(self, path: str) -> str:
        return f"{self.api_url.rstrip('/')}{path}"
