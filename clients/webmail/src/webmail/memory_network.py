"""In-memory implementation of the network-client contract.

Backs the ``simulate`` CLI command and the test-suite. Conversations are
direct (two-member) only; each member has its own consent state.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import CONSENT_ALLOWED, CONVERSATION_DM
from .network import LiveStream

TOPIC_CONVERSATIONS = "conversations"
TOPIC_MESSAGES = "messages"


class UnknownPeerError(LookupError):
    """Raised when a conversation is requested with an unregistered identifier."""


@dataclass(frozen=True)
class NetworkMessage:
    id: str
    conversation_id: str
    sender_inbox_id: str
    content: Any
    sent_at_ns: int


@dataclass
class _ConversationEntry:
    conversation_id: str
    members: Tuple[str, str]
    created_at_ns: int


class ConversationLog:
    """Append-only per-conversation message log with idempotent appends."""

    def __init__(self) -> None:
        self._events: Dict[str, List[NetworkMessage]] = {}
        self._by_id: Dict[Tuple[str, str], NetworkMessage] = {}

    def append(self, message: NetworkMessage) -> tuple[NetworkMessage, bool]:
        """Append ``message`` or return the stored one for the same ``(conversation, id)``."""

        key = (message.conversation_id, message.id)
        existing = self._by_id.get(key)
        if existing is not None:
            return existing, False
        self._events.setdefault(message.conversation_id, []).append(message)
        self._by_id[key] = message
        return message, True

    def count(self, conversation_id: str) -> int:
        return len(self._events.get(conversation_id, []))

    def list(self, conversation_id: str, *, descending: bool = False, limit: int | None = None) -> list[NetworkMessage]:
        events = sorted(self._events.get(conversation_id, []), key=lambda m: (m.sent_at_ns, m.id), reverse=descending)
        if limit is not None:
            events = events[: max(limit, 0)]
        return events


class SubscriptionHub:
    """Fans items out to per-inbox queues, one queue per open stream."""

    def __init__(self) -> None:
        self._subscriptions: Dict[Tuple[str, str], List["asyncio.Queue[Any]"]] = {}

    def subscribe(self, inbox_id: str, topic: str) -> "asyncio.Queue[Any]":
        queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._subscriptions.setdefault((inbox_id, topic), []).append(queue)
        return queue

    def unsubscribe(self, inbox_id: str, topic: str, queue: "asyncio.Queue[Any]") -> None:
        queues = self._subscriptions.get((inbox_id, topic))
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            return
        if not queues:
            self._subscriptions.pop((inbox_id, topic), None)

    def broadcast(self, inbox_ids: Iterable[str], topic: str, item: Any) -> None:
        for inbox_id in inbox_ids:
            for queue in list(self._subscriptions.get((inbox_id, topic), [])):
                queue.put_nowait(item)

    def subscriber_count(self, inbox_id: str, topic: str) -> int:
        return len(self._subscriptions.get((inbox_id, topic), []))

    async def settle(self) -> None:
        """Wait until every delivered item has been fully consumed."""

        for queues in list(self._subscriptions.values()):
            for queue in list(queues):
                await queue.join()


class InMemoryConversation:
    """One member's view of a direct conversation."""

    kind = CONVERSATION_DM

    def __init__(self, network: "InMemoryNetwork", entry: _ConversationEntry, viewer_inbox_id: str) -> None:
        self._network = network
        self._entry = entry
        self._viewer = viewer_inbox_id

    @property
    def id(self) -> str:
        return self._entry.conversation_id

    @property
    def created_at_ns(self) -> int:
        return self._entry.created_at_ns

    @property
    def peer_inbox_id(self) -> str:
        first, second = self._entry.members
        return second if first == self._viewer else first

    @property
    def consent_state(self) -> str:
        return self._network.consent(self._viewer, self.id)

    async def send(self, content: Any) -> NetworkMessage:
        return self._network.deliver(self.id, self._viewer, content)

    async def messages(self, limit: int | None = None, descending: bool = False) -> list[NetworkMessage]:
        return self._network.log.list(self.id, descending=descending, limit=limit)


class InMemoryClient:
    def __init__(self, network: "InMemoryNetwork", inbox_id: str) -> None:
        self._network = network
        self.inbox_id = inbox_id

    @property
    def address(self) -> str:
        return self._network.addresses_of(self.inbox_id)[0]

    def _view(self, entry: _ConversationEntry) -> InMemoryConversation:
        return InMemoryConversation(self._network, entry, self.inbox_id)

    async def list_conversations(
        self,
        kind: str = CONVERSATION_DM,
        consent_states: Sequence[str] = (CONSENT_ALLOWED,),
    ) -> list[InMemoryConversation]:
        views = [self._view(entry) for entry in self._network.conversations_of(self.inbox_id)]
        return [view for view in views if view.kind == kind and view.consent_state in consent_states]

    async def get_conversation(self, conversation_id: str) -> Optional[InMemoryConversation]:
        entry = self._network.entry(conversation_id)
        if entry is None or self.inbox_id not in entry.members:
            return None
        return self._view(entry)

    async def create_direct_conversation(self, identifier: str) -> InMemoryConversation:
        peer_inbox_id = self._network.inbox_for(identifier)
        if peer_inbox_id is None:
            raise UnknownPeerError(f"{identifier} is not registered on the network")
        return self._view(self._network.open_dm(self.inbox_id, peer_inbox_id))

    async def resolve_identities(self, inbox_ids: Sequence[str]) -> list[dict]:
        states = []
        for inbox_id in inbox_ids:
            addresses = self._network.addresses_of(inbox_id)
            states.append(
                {
                    "inboxId": inbox_id,
                    "identifiers": [{"identifier": address, "identifierKind": "Ethereum"} for address in addresses],
                }
            )
        return states

    def stream_conversations(self, kind: str = CONVERSATION_DM) -> LiveStream:
        def accept(conversation: InMemoryConversation) -> bool:
            return conversation.kind == kind

        return self._stream(TOPIC_CONVERSATIONS, accept, self._view)

    def stream_all_messages(
        self,
        kind: str = CONVERSATION_DM,
        consent_states: Sequence[str] = (CONSENT_ALLOWED,),
    ) -> LiveStream:
        def accept(message: NetworkMessage) -> bool:
            return self._network.consent(self.inbox_id, message.conversation_id) in consent_states

        return self._stream(TOPIC_MESSAGES, accept, lambda item: item)

    def _stream(self, topic: str, accept: Callable[[Any], bool], transform: Callable[[Any], Any]) -> LiveStream:
        hub = self._network.hub
        inbox_id = self.inbox_id

        async def source() -> AsyncGenerator[Any, None]:
            queue = hub.subscribe(inbox_id, topic)
            try:
                while True:
                    item = await queue.get()
                    try:
                        view = transform(item)
                        if accept(view):
                            yield view
                    finally:
                        queue.task_done()
            finally:
                hub.unsubscribe(inbox_id, topic, queue)

        return LiveStream(f"{topic}:{inbox_id}", source)


class InMemoryNetwork:
    def __init__(
        self,
        *,
        now_func: Callable[[], int] = time.time_ns,
        default_consent: str = CONSENT_ALLOWED,
    ) -> None:
        self._now = now_func
        self.default_consent = default_consent
        self.log = ConversationLog()
        self.hub = SubscriptionHub()
        self._addresses: Dict[str, List[str]] = {}
        self._inbox_by_address: Dict[str, str] = {}
        self._conversations: Dict[str, _ConversationEntry] = {}
        self._dm_index: Dict[frozenset, str] = {}
        self._consent: Dict[Tuple[str, str], str] = {}
        self._conversation_counter = 0

    def register(self, address: str, inbox_id: str | None = None) -> str:
        """Register an account and return its inbox id."""

        existing = self._inbox_by_address.get(address.lower())
        if existing is not None:
            return existing
        inbox_id = inbox_id or f"inbox_{secrets.token_hex(8)}"
        self._addresses.setdefault(inbox_id, []).append(address)
        self._inbox_by_address[address.lower()] = inbox_id
        return inbox_id

    def client_for(self, inbox_id: str) -> InMemoryClient:
        if inbox_id not in self._addresses:
            raise UnknownPeerError(f"{inbox_id} is not registered on the network")
        return InMemoryClient(self, inbox_id)

    def addresses_of(self, inbox_id: str) -> list[str]:
        return list(self._addresses.get(inbox_id, []))

    def inbox_for(self, identifier: str) -> Optional[str]:
        if identifier in self._addresses:
            return identifier
        return self._inbox_by_address.get(identifier.lower())

    def entry(self, conversation_id: str) -> Optional[_ConversationEntry]:
        return self._conversations.get(conversation_id)

    def conversations_of(self, inbox_id: str) -> list[_ConversationEntry]:
        return [entry for entry in self._conversations.values() if inbox_id in entry.members]

    def consent(self, inbox_id: str, conversation_id: str) -> str:
        return self._consent.get((inbox_id, conversation_id), self.default_consent)

    def set_consent(self, inbox_id: str, conversation_id: str, state: str) -> None:
        self._consent[(inbox_id, conversation_id)] = state

    def _next_conversation_id(self) -> str:
        while True:
            self._conversation_counter += 1
            candidate = f"conv_{self._conversation_counter}"
            if candidate not in self._conversations:
                return candidate

    def open_dm(
        self,
        creator_inbox_id: str,
        peer_inbox_id: str,
        *,
        conversation_id: str | None = None,
        created_at_ns: int | None = None,
        announce: bool = True,
    ) -> _ConversationEntry:
        """Return the existing DM between the two inboxes or create it."""

        pair = frozenset((creator_inbox_id, peer_inbox_id))
        existing_id = self._dm_index.get(pair)
        if existing_id is not None:
            return self._conversations[existing_id]
        entry = _ConversationEntry(
            conversation_id=conversation_id or self._next_conversation_id(),
            members=(creator_inbox_id, peer_inbox_id),
            created_at_ns=self._now() if created_at_ns is None else created_at_ns,
        )
        self._conversations[entry.conversation_id] = entry
        self._dm_index[pair] = entry.conversation_id
        self._consent.setdefault((creator_inbox_id, entry.conversation_id), CONSENT_ALLOWED)
        if announce:
            self.hub.broadcast(entry.members, TOPIC_CONVERSATIONS, entry)
        return entry

    def deliver(
        self,
        conversation_id: str,
        sender_inbox_id: str,
        content: Any,
        *,
        message_id: str | None = None,
        sent_at_ns: int | None = None,
        announce: bool = True,
    ) -> NetworkMessage:
        entry = self._conversations.get(conversation_id)
        if entry is None:
            raise KeyError(f"unknown conversation {conversation_id}")
        if sender_inbox_id not in entry.members:
            raise PermissionError(f"{sender_inbox_id} is not a member of {conversation_id}")
        message = NetworkMessage(
            id=message_id or f"{conversation_id}:{self.log.count(conversation_id) + 1}",
            conversation_id=conversation_id,
            sender_inbox_id=sender_inbox_id,
            content=content,
            sent_at_ns=self._now() if sent_at_ns is None else sent_at_ns,
        )
        stored, created = self.log.append(message)
        if created and announce:
            self.hub.broadcast(entry.members, TOPIC_MESSAGES, stored)
        return stored

    async def settle(self) -> None:
        await self.hub.settle()
        # Callbacks may fetch and deliver more work while draining.
        await asyncio.sleep(0)
        await self.hub.settle()
