"""Runtime configuration and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

NETWORK_ENVS = ("local", "dev", "production")
DEFAULT_PROVIDER_RPC_URL = "https://1.rpc.thirdweb.com"
LOG_FORMAT = "[xmtp.mx] %(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class WebmailConfig:
    network_env: str = "production"
    identity_provider_id: str = ""
    identity_provider_rpc_url: str = DEFAULT_PROVIDER_RPC_URL
    debug: bool = False
    stall_threshold_seconds: float = 10.0
    negative_cache_ttl_seconds: float = 60.0
    negative_cache_max_entries: int = 512
    provider_check_timeout_seconds: float = 10.0
    bridge_domain: str = "xmtp.mx"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WebmailConfig":
        env = os.environ if environ is None else environ
        defaults = cls()

        network_env = env.get("WEBMAIL_NETWORK_ENV", defaults.network_env).strip().lower()
        if network_env not in NETWORK_ENVS:
            network_env = defaults.network_env

        return cls(
            network_env=network_env,
            identity_provider_id=env.get("WEBMAIL_IDENTITY_PROVIDER_ID", "").strip(),
            identity_provider_rpc_url=env.get("WEBMAIL_IDENTITY_PROVIDER_RPC_URL", "").strip()
            or defaults.identity_provider_rpc_url,
            debug=env.get("WEBMAIL_DEBUG", "").strip() == "1",
            stall_threshold_seconds=_float(env.get("WEBMAIL_STALL_THRESHOLD_SECONDS"), defaults.stall_threshold_seconds),
            negative_cache_ttl_seconds=_float(
                env.get("WEBMAIL_NEGATIVE_CACHE_TTL_SECONDS"), defaults.negative_cache_ttl_seconds
            ),
        )


def _float(raw: Optional[str], default: float) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def configure_logging(config: WebmailConfig) -> None:
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.WARNING,
        format=LOG_FORMAT,
    )
    if config.debug:
        logging.getLogger(__name__).info(
            'Debug logging enabled (set WEBMAIL_DEBUG="1" to toggle).'
        )
