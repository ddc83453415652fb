"""
Runtime configuration for the chat client and the signaling server.

Every field can be overridden through a ``PEERCHAT_*`` environment variable;
the command line entry points override those again.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Public STUN/TURN servers used by the browser client this protocol is shared with.
DEFAULT_ICE_SERVERS = (
    {"urls": ["stun:stun1.l.google.com:19302", "stun:stun2.l.google.com:19302"]},
    {
        "urls": [
            "stun:openrelay.metered.ca:80",
            "turn:openrelay.metered.ca:80",
            "turn:openrelay.metered.ca:443",
        ],
        "username": "openrelayproject",
        "credential": "openrelayproject",
    },
)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    if raw.strip().lower() in ("none", "off"):
        return None
    return float(raw)


@dataclass(frozen=True)
class Config:
    signaling_url: str = "ws://localhost:8765"
    server_host: str = "0.0.0.0"
    server_port: int = 8765
    ice_servers: tuple = field(default=DEFAULT_ICE_SERVERS)
    channel_label: str = "chat"
    typing_timeout: float = 2.0
    disconnect_grace: float = 3.0
    # None waits for the peer forever
    negotiation_timeout: Optional[float] = None
    shutdown_timeout: float = 2.0
    server_rate_limit: int = 100
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        ice_raw = os.environ.get("PEERCHAT_ICE_SERVERS")
        return cls(
            signaling_url=os.environ.get("PEERCHAT_SIGNALING_URL", defaults.signaling_url),
            server_host=os.environ.get("PEERCHAT_HOST", defaults.server_host),
            server_port=int(os.environ.get("PEERCHAT_PORT", defaults.server_port)),
            ice_servers=tuple(json.loads(ice_raw)) if ice_raw else defaults.ice_servers,
            channel_label=os.environ.get("PEERCHAT_CHANNEL_LABEL", defaults.channel_label),
            typing_timeout=_env_float("PEERCHAT_TYPING_TIMEOUT", defaults.typing_timeout),
            disconnect_grace=_env_float("PEERCHAT_DISCONNECT_GRACE", defaults.disconnect_grace),
            negotiation_timeout=_env_float("PEERCHAT_NEGOTIATION_TIMEOUT", defaults.negotiation_timeout),
            shutdown_timeout=_env_float("PEERCHAT_SHUTDOWN_TIMEOUT", defaults.shutdown_timeout),
            server_rate_limit=int(os.environ.get("PEERCHAT_RATE_LIMIT", defaults.server_rate_limit)),
            log_level=os.environ.get("PEERCHAT_LOG_LEVEL", defaults.log_level),
        )

    def with_overrides(self, **overrides) -> "Config":
        """Returns a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def configure_logging(level: str = "WARNING"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)
