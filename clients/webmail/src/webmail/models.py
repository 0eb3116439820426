from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

CONSENT_ALLOWED = "allowed"
CONSENT_UNKNOWN = "unknown"
CONSENT_DENIED = "denied"

CONVERSATION_DM = "dm"
CONVERSATION_GROUP = "group"


@dataclass(frozen=True)
class MessageRecord:
    """An immutable message as observed from the network."""

    id: str
    conversation_id: str
    sender_identifier: str
    content: object
    sent_at_ns: int


@dataclass
class ConversationRecord:
    """Merged view of one direct conversation, owned by the store."""

    id: str
    peer_identifier: Optional[str] = None
    peer_display_address: Optional[str] = None
    last_message: Optional[MessageRecord] = None
    created_at_ns: Optional[int] = None

    @property
    def display_label(self) -> str:
        return self.peer_display_address or self.peer_identifier or self.id

    @property
    def activity_ns(self) -> int:
        if self.last_message is not None:
            return self.last_message.sent_at_ns
        if self.created_at_ns is not None:
            return self.created_at_ns
        return 0


@dataclass(frozen=True)
class PeerIdentity:
    """Canonical shape of an identity-resolution result."""

    inbox_id: str
    display_address: Optional[str] = None
    raw_identifiers: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def resolved(self) -> bool:
        return bool(self.display_address)
