"""Recipient parsing and address display helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

BRIDGE_DOMAIN = "xmtp.mx"

KIND_DIRECT = "direct"
KIND_UNSUPPORTED = "unsupported"
KIND_INVALID = "invalid"

_DIRECT_IDENTIFIER_RE = re.compile(r"0x[a-fA-F0-9]{40}")


@dataclass(frozen=True)
class Recipient:
    """Typed result of parsing the free-text "to" field.

    ``direct`` recipients carry the peer ``identifier`` (a chain address or a
    resolvable name). When the input used the bridge domain, ``alias`` holds
    the full ``local@domain`` text that was typed. ``unsupported`` recipients
    carry the foreign ``domain`` and the untouched ``address``; ``invalid``
    recipients carry a ``reason`` suitable for display.
    """

    kind: str
    identifier: str = ""
    alias: Optional[str] = None
    address: Optional[str] = None
    domain: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_bridged(self) -> bool:
        return self.alias is not None

    @classmethod
    def direct(cls, identifier: str, alias: Optional[str] = None) -> "Recipient":
        return cls(kind=KIND_DIRECT, identifier=identifier, alias=alias)

    @classmethod
    def unsupported(cls, address: str, domain: str) -> "Recipient":
        return cls(kind=KIND_UNSUPPORTED, address=address, domain=domain)

    @classmethod
    def invalid(cls, reason: str) -> "Recipient":
        return cls(kind=KIND_INVALID, reason=reason)


def parse_recipient(value: str, bridge_domain: str = BRIDGE_DOMAIN) -> Recipient:
    trimmed = (value or "").strip()
    if not trimmed:
        return Recipient.invalid("Recipient is required.")

    local, sep, domain = trimmed.rpartition("@")
    if not sep:
        return Recipient.direct(trimmed)

    local = local.strip()
    domain = domain.strip().lower()
    if not local or not domain:
        return Recipient.invalid("Invalid email address.")

    if domain == bridge_domain.lower():
        return Recipient.direct(local, alias=trimmed)

    return Recipient.unsupported(trimmed, domain)


def is_direct_identifier(value: str) -> bool:
    """Return True for a 0x-prefixed, 40 hex digit chain address."""

    return isinstance(value, str) and _DIRECT_IDENTIFIER_RE.fullmatch(value) is not None


def shorten_for_display(value: str, keep_chars: int = 4) -> str:
    if not is_direct_identifier(value):
        return value
    keep_chars = max(0, keep_chars)
    suffix = value[-keep_chars:] if keep_chars else ""
    return f"{value[: 2 + keep_chars]}…{suffix}"
