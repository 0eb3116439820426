"""Email-like envelope carried in the network's opaque message content."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

ENVELOPE_VERSION = 1
ENVELOPE_TYPE = "email"
DECODED_EMAIL = "email"
DECODED_TEXT = "text"


@dataclass(frozen=True)
class EmailEnvelope:
    subject: str
    body: str
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    sent_at_ms: Optional[float] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "v": ENVELOPE_VERSION,
            "type": ENVELOPE_TYPE,
            "subject": self.subject,
            "body": self.body,
        }
        if self.from_address is not None:
            payload["from"] = self.from_address
        if self.to_address is not None:
            payload["to"] = self.to_address
        if self.sent_at_ms is not None:
            payload["sentAt"] = self.sent_at_ms
        return payload


@dataclass(frozen=True)
class DecodedContent:
    """Either ``kind == "email"`` with ``envelope`` or ``kind == "text"`` with ``text``."""

    kind: str
    envelope: Optional[EmailEnvelope] = None
    text: str = ""

    @property
    def is_email(self) -> bool:
        return self.kind == DECODED_EMAIL


def _now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def encode_envelope(
    subject: str,
    body: str,
    from_address: Optional[str] = None,
    to_address: Optional[str] = None,
    *,
    now_ms: Optional[int] = None,
) -> str:
    envelope = EmailEnvelope(
        subject=subject.strip(),
        body=body,
        from_address=from_address,
        to_address=to_address,
        sent_at_ms=_now_ms() if now_ms is None else now_ms,
    )
    return json.dumps(envelope.to_wire(), separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def decode_envelope(content: Any) -> DecodedContent:
    """Best-effort decode; anything that is not a v1 email comes back as text.

    The raw string is returned untouched on every fallback path so that newer
    envelope versions and plain messages render as they were sent.
    """

    if not isinstance(content, str):
        return DecodedContent(kind=DECODED_TEXT, text="" if content is None else str(content))

    trimmed = content.strip()
    if not trimmed:
        return DecodedContent(kind=DECODED_TEXT, text="")

    try:
        parsed = json.loads(trimmed)
    except (ValueError, RecursionError):
        return DecodedContent(kind=DECODED_TEXT, text=content)

    if not isinstance(parsed, dict):
        return DecodedContent(kind=DECODED_TEXT, text=content)
    version = parsed.get("v")
    if parsed.get("type") != ENVELOPE_TYPE or not _is_number(version) or version != ENVELOPE_VERSION:
        return DecodedContent(kind=DECODED_TEXT, text=content)

    subject = parsed.get("subject")
    body = parsed.get("body")
    if not isinstance(subject, str) or not isinstance(body, str):
        return DecodedContent(kind=DECODED_TEXT, text=content)

    from_address = parsed.get("from")
    to_address = parsed.get("to")
    sent_at = parsed.get("sentAt")
    return DecodedContent(
        kind=DECODED_EMAIL,
        envelope=EmailEnvelope(
            subject=subject,
            body=body,
            from_address=from_address if isinstance(from_address, str) else None,
            to_address=to_address if isinstance(to_address, str) else None,
            sent_at_ms=sent_at if _is_number(sent_at) else None,
        ),
    )


def preview_of(content: Any) -> tuple[str, str]:
    """Return ``(subject, snippet)`` for a list row."""

    decoded = decode_envelope(content)
    if decoded.envelope is not None:
        return decoded.envelope.subject, decoded.envelope.body
    first_line = decoded.text.split("\n", 1)[0].strip()
    return first_line, decoded.text


def reply_subject(contents: Sequence[Any]) -> Optional[str]:
    """``Re: <subject>`` of the newest message carrying a non-blank subject."""

    for content in reversed(contents):
        decoded = decode_envelope(content)
        if decoded.envelope is not None and decoded.envelope.subject.strip():
            return f"Re: {decoded.envelope.subject.strip()}"
    return None
