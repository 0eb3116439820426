"""Validate the identity-provider client id against its RPC edge."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from .config import DEFAULT_PROVIDER_RPC_URL

logger = logging.getLogger(__name__)

PROVIDER_MISSING = "missing"
PROVIDER_CHECKING = "checking"
PROVIDER_VALID = "valid"
PROVIDER_INVALID = "invalid"


@dataclass(frozen=True)
class ProviderCheck:
    status: str
    error: Optional[str] = None


def _build_url(base_url: str, client_id: str) -> str:
    return f"{base_url.rstrip('/')}/{client_id}"


async def validate_provider_id(
    client_id: str,
    *,
    rpc_url: str = DEFAULT_PROVIDER_RPC_URL,
    timeout_seconds: float = 10.0,
    session: Optional[aiohttp.ClientSession] = None,
) -> ProviderCheck:
    """POST an ``eth_chainId`` JSON-RPC call; any result means the id is usable."""

    client_id = (client_id or "").strip()
    if not client_id:
        logger.debug("identity provider id missing; wallet connect disabled")
        return ProviderCheck(PROVIDER_MISSING)

    payload = {"jsonrpc": "2.0", "id": 1, "method": "eth_chainId", "params": []}
    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout_seconds))
    try:
        async with session.post(_build_url(rpc_url, client_id), json=payload) as response:
            if response.status < 200 or response.status >= 300:
                text = (await response.text()).strip()
                logger.debug("identity provider id rejected: HTTP %s", response.status)
                error = f"HTTP {response.status}: {text}" if text else f"HTTP {response.status}"
                return ProviderCheck(PROVIDER_INVALID, error)
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.debug("identity provider id check failed", exc_info=True)
        return ProviderCheck(PROVIDER_INVALID, str(exc) or "Network error")
    finally:
        if owns_session:
            await session.close()

    if isinstance(body, dict) and body.get("result"):
        return ProviderCheck(PROVIDER_VALID)
    message = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
    return ProviderCheck(PROVIDER_INVALID, message if isinstance(message, str) and message else "Unexpected response")
