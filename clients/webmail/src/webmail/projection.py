"""Display-ready projections of the conversation store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from .addressing import shorten_for_display
from .envelope import DECODED_EMAIL, DecodedContent, EmailEnvelope, decode_envelope, preview_of
from .models import ConversationRecord

WELCOME_ID = "welcome"
WELCOME_SENDER = "xmtp.mx"
WELCOME_SUBJECT = "Welcome to xmtp.mx"
WELCOME_PREVIEW = "Your wallet is now an inbox."
WELCOME_BODY = (
    "Your wallet is now an inbox.\n\n"
    "Messages you send here travel end-to-end encrypted over the XMTP network. "
    "Compose to a 0x address, an ENS name, or name@xmtp.mx to start a conversation.\n\n"
    "This note lives only in your browser and cannot be replied to."
)
# 2024-01-01T00:00:00Z
WELCOME_SENT_AT_NS = 1_704_067_200_000_000_000


@dataclass(frozen=True)
class ConversationListItem:
    id: str
    label: str
    subject: str
    preview: str
    timestamp_ns: int
    is_welcome: bool = False
    peer_identifier: Optional[str] = None


@dataclass(frozen=True)
class ThreadEntry:
    id: str
    is_self: bool
    sender_label: str
    sent_at_ns: int
    decoded: DecodedContent

    @property
    def subject(self) -> str:
        return self.decoded.envelope.subject if self.decoded.envelope is not None else ""

    @property
    def body(self) -> str:
        return self.decoded.envelope.body if self.decoded.envelope is not None else self.decoded.text


def welcome_item() -> ConversationListItem:
    return ConversationListItem(
        id=WELCOME_ID,
        label=WELCOME_SENDER,
        subject=WELCOME_SUBJECT,
        preview=WELCOME_PREVIEW,
        timestamp_ns=WELCOME_SENT_AT_NS,
        is_welcome=True,
    )


def _welcome_matches(query: str) -> bool:
    return any(query in text.lower() for text in (WELCOME_SUBJECT, WELCOME_PREVIEW, WELCOME_BODY))


def _records(source: Any) -> Iterable[ConversationRecord]:
    if hasattr(source, "conversations"):
        return source.conversations()
    return source


def _to_item(record: ConversationRecord) -> ConversationListItem:
    subject, preview = "", ""
    if record.last_message is not None:
        subject, preview = preview_of(record.last_message.content)
    return ConversationListItem(
        id=record.id,
        label=shorten_for_display(record.display_label),
        subject=subject or "(no subject)",
        preview=preview,
        timestamp_ns=record.activity_ns,
        peer_identifier=record.peer_identifier,
    )


def project(source: Any, search_query: str = "") -> List[ConversationListItem]:
    """Filter by display label, newest first, with the welcome note on top.

    ``source`` is a store (anything with ``conversations()``) or an iterable of
    records. Sorting is stable, so equal timestamps keep input order.
    """

    query = (search_query or "").strip().lower()
    items: List[ConversationListItem] = []
    if not query or _welcome_matches(query):
        items.append(welcome_item())

    matching = [record for record in _records(source) if not query or query in record.display_label.lower()]
    ordered = sorted(matching, key=lambda record: record.activity_ns, reverse=True)
    items.extend(_to_item(record) for record in ordered)
    return items


def reconcile_selection(selected_id: Optional[str], items: Sequence[ConversationListItem]) -> Optional[str]:
    """Keep the selection if it is still listed, else fall back to the first item."""

    if selected_id is not None and any(item.id == selected_id for item in items):
        return selected_id
    return items[0].id if items else None


def welcome_thread() -> List[ThreadEntry]:
    envelope = EmailEnvelope(subject=WELCOME_SUBJECT, body=WELCOME_BODY, from_address=WELCOME_SENDER)
    return [
        ThreadEntry(
            id=WELCOME_ID,
            is_self=False,
            sender_label=WELCOME_SENDER,
            sent_at_ns=WELCOME_SENT_AT_NS,
            decoded=DecodedContent(kind=DECODED_EMAIL, envelope=envelope),
        )
    ]


def thread_view(store: Any, conversation_id: str, self_identifier: Optional[str]) -> List[ThreadEntry]:
    if conversation_id == WELCOME_ID:
        return welcome_thread()

    own = (self_identifier or "").lower()
    entries: List[ThreadEntry] = []
    for message in store.messages(conversation_id):
        is_self = bool(own) and message.sender_identifier.lower() == own
        if is_self:
            label = "You"
        else:
            identity = store.cached_identity(message.sender_identifier)
            label = shorten_for_display(
                identity.display_address if identity is not None and identity.display_address else message.sender_identifier
            )
        entries.append(
            ThreadEntry(
                id=message.id,
                is_self=is_self,
                sender_label=label,
                sent_at_ns=message.sent_at_ns,
                decoded=decode_envelope(message.content),
            )
        )
    return entries
