"""Status panel rows and redacted diagnostics."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

from .addressing import shorten_for_display
from .provider_check import PROVIDER_CHECKING, PROVIDER_INVALID, PROVIDER_MISSING, PROVIDER_VALID
from .startup import (
    CLIENT_FAILED,
    CLIENT_INITIALIZING,
    CLIENT_READY,
    SECURITY_FAILED,
    SECURITY_READY,
    WALLET_CONNECTED,
)

TONE_OK = "ok"
TONE_PENDING = "pending"
TONE_ERROR = "error"
TONE_NEUTRAL = "neutral"

SLOW_SUFFIX = " (taking longer than usual)"

SENSITIVE_KEYS = {
    "identity_provider_id",
    "client_id",
    "token",
    "auth_token",
    "session_token",
    "credential",
    "signer",
}

_KEY_VALUE_RE = re.compile(
    r"([\"']?(?:client_?id|identity_provider_id|auth_token|session_token|token|credential)[\"']?\s*[:=]\s*[\"']?)([^\"'\s,}&]+)",
    flags=re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(Bearer\s+)([^\s]+)", flags=re.IGNORECASE)

StatusItem = Tuple[str, str, str]


def redact_text(text: str) -> str:
    rendered = str(text)
    rendered = _BEARER_RE.sub(r"\1[REDACTED]", rendered)
    return _KEY_VALUE_RE.sub(r"\1[REDACTED]", rendered)


def redact_mapping(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Deep redact values under sensitive keys and scrub free-text values."""

    redacted: Dict[str, Any] = {}
    for key, value in obj.items():
        if str(key).lower() in SENSITIVE_KEYS:
            redacted[key] = "[REDACTED]" if value else value
        elif isinstance(value, dict):
            redacted[key] = redact_mapping(value)
        elif isinstance(value, str):
            redacted[key] = redact_text(value)
        else:
            redacted[key] = value
    return redacted


def _security_row(sequencer: Any) -> StatusItem:
    if sequencer.security_state == SECURITY_READY:
        return ("Security module", "Ready", TONE_OK)
    if sequencer.security_state == SECURITY_FAILED:
        return ("Security module", f"Failed: {sequencer.security_error or 'unknown error'}", TONE_ERROR)
    value = "Loading" + (SLOW_SUFFIX if sequencer.security_stalled else "")
    return ("Security module", value, TONE_PENDING)


def _provider_row(sequencer: Any) -> StatusItem:
    state = sequencer.provider_state
    if state == PROVIDER_VALID:
        return ("Identity provider id", "Valid", TONE_OK)
    if state == PROVIDER_CHECKING:
        return ("Identity provider id", "Checking", TONE_PENDING)
    if state == PROVIDER_INVALID:
        return ("Identity provider id", f"Invalid: {sequencer.provider_error or 'rejected'}", TONE_ERROR)
    if state == PROVIDER_MISSING:
        return ("Identity provider id", "Missing (set WEBMAIL_IDENTITY_PROVIDER_ID)", TONE_ERROR)
    return ("Identity provider id", state, TONE_NEUTRAL)


def _wallet_row(sequencer: Any) -> StatusItem:
    if sequencer.wallet_state == WALLET_CONNECTED:
        address = sequencer.wallet_address
        return ("Wallet", shorten_for_display(address) if address else "Connected", TONE_OK)
    return ("Wallet", "Not connected", TONE_NEUTRAL)


def _client_row(sequencer: Any) -> StatusItem:
    state = sequencer.client_state
    if state == CLIENT_READY:
        return ("Network client", "Ready", TONE_OK)
    if state == CLIENT_INITIALIZING:
        value = "Initializing" + (SLOW_SUFFIX if sequencer.client_stalled else "")
        return ("Network client", value, TONE_PENDING)
    if state == CLIENT_FAILED:
        return ("Network client", f"Failed: {sequencer.client_error or 'unknown error'}", TONE_ERROR)
    reason = sequencer.blocked_reason()
    return ("Network client", f"Waiting: {reason}" if reason else "Idle", TONE_NEUTRAL)


def status_items(sequencer: Any, conversations_count: Optional[int] = None) -> List[StatusItem]:
    """Ordered ``(label, value, tone)`` rows for the status panel."""

    rows = [
        ("Environment", sequencer.config.network_env, TONE_NEUTRAL),
        _security_row(sequencer),
        _provider_row(sequencer),
        _wallet_row(sequencer),
        _client_row(sequencer),
    ]
    if conversations_count is None:
        rows.append(("Conversations", "-", TONE_NEUTRAL))
    else:
        rows.append(("Conversations", str(conversations_count), TONE_OK))
    return rows


def diagnostics(sequencer: Any, conversations_count: Optional[int] = None) -> Dict[str, Any]:
    config = sequencer.config
    return redact_mapping(
        {
            "network_env": config.network_env,
            "identity_provider_id": config.identity_provider_id,
            "security": {
                "state": sequencer.security_state,
                "error": sequencer.security_error,
                "stalled": sequencer.security_stalled,
            },
            "provider": {"state": sequencer.provider_state, "error": sequencer.provider_error},
            "wallet": {"state": sequencer.wallet_state, "address": sequencer.wallet_address},
            "client": {
                "state": sequencer.client_state,
                "error": sequencer.client_error,
                "stalled": sequencer.client_stalled,
                "blocked_reason": sequencer.blocked_reason(),
            },
            "conversations": conversations_count,
        }
    )


def diagnostics_text(sequencer: Any, conversations_count: Optional[int] = None) -> str:
    return json.dumps(diagnostics(sequencer, conversations_count), indent=2, sort_keys=True)
