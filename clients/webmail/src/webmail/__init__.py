"""Conversation synchronization core for the xmtp.mx webmail client."""

from .addressing import Recipient, is_direct_identifier, parse_recipient, shorten_for_display
from .config import WebmailConfig, configure_logging
from .envelope import DecodedContent, EmailEnvelope, decode_envelope, encode_envelope
from .mailbox import Mailbox
from .models import ConversationRecord, MessageRecord, PeerIdentity
from .network import LiveStream, NameResolver, StreamHandle
from .projection import ConversationListItem, project, reconcile_selection, thread_view
from .startup import ReadinessSequencer
from .store import ConversationStore, SendError

__all__ = [
    "Recipient",
    "is_direct_identifier",
    "parse_recipient",
    "shorten_for_display",
    "WebmailConfig",
    "configure_logging",
    "DecodedContent",
    "EmailEnvelope",
    "decode_envelope",
    "encode_envelope",
    "Mailbox",
    "ConversationRecord",
    "MessageRecord",
    "PeerIdentity",
    "LiveStream",
    "NameResolver",
    "StreamHandle",
    "ConversationListItem",
    "project",
    "reconcile_selection",
    "thread_view",
    "ReadinessSequencer",
    "ConversationStore",
    "SendError",
]
