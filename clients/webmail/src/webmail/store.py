"""Conversation reconciliation store.

Bulk load, both live streams and local sends all write through
``upsert_conversation`` and ``append_messages``; the event loop serialises
those calls so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from .addressing import is_direct_identifier
from .models import (
    CONSENT_ALLOWED,
    CONVERSATION_DM,
    ConversationRecord,
    MessageRecord,
    PeerIdentity,
)
from .network import NameResolver, StreamHandle, normalize_identity_state, to_message_record

logger = logging.getLogger(__name__)

STATE_UNINITIALIZED = "uninitialized"
STATE_BULK_LOADING = "bulk-loading"
STATE_LOADED = "loaded"
STATE_STREAMING = "streaming"
STATE_CLOSED = "closed"

RESOLUTION_HINT = "Try a 0x address instead."

Listener = Callable[[str], None]


class SendError(Exception):
    """A send the user is waiting on failed; ``str(exc)`` is display-ready."""


def _describe(exc: BaseException, fallback: str) -> str:
    text = str(exc).strip()
    return text or fallback


def _in_scope(conversation: Any) -> bool:
    kind = getattr(conversation, "kind", CONVERSATION_DM)
    consent = getattr(conversation, "consent_state", CONSENT_ALLOWED)
    return kind == CONVERSATION_DM and consent == CONSENT_ALLOWED


class ConversationStore:
    def __init__(
        self,
        client: Any,
        *,
        name_resolver: Optional[NameResolver] = None,
        negative_cache_ttl_seconds: float = 60.0,
        negative_cache_max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._name_resolver = name_resolver
        self._negative_ttl = negative_cache_ttl_seconds
        self._negative_max = negative_cache_max_entries
        self._clock = clock

        self._state = STATE_UNINITIALIZED
        self._generation = 0
        self._conversations: Dict[str, ConversationRecord] = {}
        self._messages: Dict[str, List[MessageRecord]] = {}
        self._message_ids: Dict[str, Set[str]] = {}
        self._handles: Dict[str, Any] = {}
        self._identities: Dict[str, PeerIdentity] = {}
        self._negative: Dict[str, float] = {}
        self._lookups: Dict[str, "asyncio.Task[Optional[PeerIdentity]]"] = {}
        self._stream_handles: List[StreamHandle] = []
        self._listeners: List[Listener] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def client(self) -> Any:
        return self._client

    @property
    def streaming(self) -> bool:
        return any(handle.active for handle in self._stream_handles)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def _notify(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation_id)
            except Exception:
                logger.warning("store listener failed for %s", conversation_id, exc_info=True)

    def _is_live(self, generation: int) -> bool:
        return self._state != STATE_CLOSED and generation == self._generation

    # Read side

    def conversations(self) -> list[ConversationRecord]:
        return list(self._conversations.values())

    def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        return self._conversations.get(conversation_id)

    def messages(self, conversation_id: str) -> list[MessageRecord]:
        return list(self._messages.get(conversation_id, []))

    def cached_identity(self, inbox_id: str) -> Optional[PeerIdentity]:
        return self._identities.get(inbox_id)

    # Write side

    def upsert_conversation(
        self,
        conversation_id: str,
        *,
        peer_identifier: Optional[str] = None,
        peer_display_address: Optional[str] = None,
        last_message: Optional[MessageRecord] = None,
        created_at_ns: Optional[int] = None,
    ) -> ConversationRecord:
        """Merge the given fields into the record for ``conversation_id``.

        Fields left as ``None`` never clear previously known values, and
        ``last_message`` only moves forward in ``(sent_at_ns, id)`` order so
        redundant or late deliveries cannot regress the preview.
        """

        record = self._conversations.get(conversation_id)
        if record is None:
            record = ConversationRecord(id=conversation_id)
            self._conversations[conversation_id] = record
        if peer_identifier:
            record.peer_identifier = peer_identifier
        if peer_display_address:
            record.peer_display_address = peer_display_address
        if created_at_ns is not None and record.created_at_ns is None:
            record.created_at_ns = created_at_ns
        if last_message is not None:
            current = record.last_message
            if current is None or (last_message.sent_at_ns, last_message.id) > (current.sent_at_ns, current.id):
                record.last_message = last_message
        self._notify(conversation_id)
        return record

    def append_messages(
        self,
        conversation_id: str,
        messages: Union[MessageRecord, Iterable[MessageRecord]],
    ) -> list[MessageRecord]:
        """Merge messages into the conversation's sequence; returns the new ones.

        Messages already present by id are ignored. The sequence stays sorted
        ascending by ``sent_at_ns`` (ties by id) whatever the arrival order.
        """

        if isinstance(messages, MessageRecord):
            messages = [messages]
        sequence = self._messages.setdefault(conversation_id, [])
        known = self._message_ids.setdefault(conversation_id, set())
        added: list[MessageRecord] = []
        for message in messages:
            if message.id in known:
                continue
            known.add(message.id)
            sequence.append(message)
            added.append(message)
        if added:
            sequence.sort(key=lambda message: (message.sent_at_ns, message.id))
            self._notify(conversation_id)
        return added

    def _ingest_message(self, record: MessageRecord) -> None:
        self.append_messages(record.conversation_id, record)
        self.upsert_conversation(record.conversation_id, last_message=record)

    # Identity resolution

    async def resolve_peer_identity(self, inbox_id: Optional[str]) -> Optional[PeerIdentity]:
        if not inbox_id:
            return None
        cached = self._identities.get(inbox_id)
        if cached is not None and cached.resolved:
            return cached
        expires_at = self._negative.get(inbox_id)
        if expires_at is not None:
            if self._clock() < expires_at:
                return cached
            self._negative.pop(inbox_id, None)

        task = self._lookups.get(inbox_id)
        if task is None:
            task = asyncio.ensure_future(self._lookup_identity(inbox_id))
            self._lookups[inbox_id] = task
            task.add_done_callback(lambda _: self._lookups.pop(inbox_id, None))
        return await asyncio.shield(task)

    async def _lookup_identity(self, inbox_id: str) -> Optional[PeerIdentity]:
        try:
            states = await self._client.resolve_identities([inbox_id])
        except Exception:
            logger.warning("identity lookup failed for %s", inbox_id, exc_info=True)
            self._remember_miss(inbox_id)
            return None
        if self._state == STATE_CLOSED:
            return None

        identities = [normalize_identity_state(state, inbox_id) for state in states or []]
        identity = next((item for item in identities if item.inbox_id == inbox_id), None)
        if identity is None:
            identity = PeerIdentity(inbox_id=inbox_id)
        self._identities[inbox_id] = identity
        if not identity.resolved:
            logger.debug("no chain address for %s", inbox_id)
            self._remember_miss(inbox_id)
        return identity

    def _remember_miss(self, inbox_id: str) -> None:
        if self._negative_ttl <= 0 or self._negative_max <= 0:
            return
        self._negative.pop(inbox_id, None)
        while len(self._negative) >= self._negative_max:
            self._negative.pop(next(iter(self._negative)))
        self._negative[inbox_id] = self._clock() + self._negative_ttl

    # Network ingestion

    async def _last_message(self, conversation: Any) -> Optional[MessageRecord]:
        try:
            latest = await conversation.messages(limit=1, descending=True)
        except Exception:
            logger.warning("last message fetch failed for %s", conversation.id, exc_info=True)
            return None
        if not latest:
            return None
        try:
            return to_message_record(latest[0])
        except (AttributeError, TypeError, ValueError):
            logger.warning("malformed last message in %s", conversation.id, exc_info=True)
            return None

    async def _ingest_conversation(
        self,
        conversation: Any,
        generation: int,
        *,
        fetch_last_message: bool = True,
    ) -> Optional[ConversationRecord]:
        conversation_id = str(conversation.id)
        peer = getattr(conversation, "peer_inbox_id", None)
        created_at_ns = getattr(conversation, "created_at_ns", None)

        if fetch_last_message:
            identity, last = await asyncio.gather(
                self.resolve_peer_identity(peer),
                self._last_message(conversation),
            )
        else:
            identity, last = await self.resolve_peer_identity(peer), None

        if not self._is_live(generation):
            return None
        self._handles[conversation_id] = conversation
        record = self.upsert_conversation(
            conversation_id,
            peer_identifier=peer,
            peer_display_address=identity.display_address if identity is not None else None,
            last_message=last,
            created_at_ns=created_at_ns,
        )
        if last is not None:
            self.append_messages(conversation_id, last)
        return record

    async def bulk_load(self) -> None:
        """Load every allowed direct conversation with its peer and last message."""

        if self._state == STATE_CLOSED:
            raise RuntimeError("store is closed")
        generation = self._generation
        if self._state == STATE_UNINITIALIZED:
            self._state = STATE_BULK_LOADING
        logger.debug("bulk load starting")
        try:
            conversations = await self._client.list_conversations(
                kind=CONVERSATION_DM,
                consent_states=(CONSENT_ALLOWED,),
            )
        except Exception:
            logger.warning("conversation list failed; continuing with an empty inbox", exc_info=True)
            conversations = []

        in_scope = [conversation for conversation in conversations if _in_scope(conversation)]
        results = await asyncio.gather(
            *(self._ingest_conversation(conversation, generation) for conversation in in_scope),
            return_exceptions=True,
        )
        for conversation, result in zip(in_scope, results):
            if isinstance(result, Exception):
                logger.warning("could not load conversation %s: %s", getattr(conversation, "id", "?"), result)
                if self._is_live(generation):
                    self.upsert_conversation(str(conversation.id))
        if self._state == STATE_BULK_LOADING:
            self._state = STATE_LOADED
        logger.debug("bulk load finished with %d conversations", len(in_scope))

    async def load_history(self, conversation_id: str) -> list[MessageRecord]:
        """Fetch the full message list of a conversation and merge it."""

        generation = self._generation
        try:
            conversation = self._handles.get(conversation_id) or await self._client.get_conversation(conversation_id)
            if conversation is None:
                return []
            history = await conversation.messages(descending=False)
            records = [to_message_record(message) for message in history]
        except Exception:
            logger.warning("history fetch failed for %s", conversation_id, exc_info=True)
            return []
        if not self._is_live(generation):
            return []
        added = self.append_messages(conversation_id, records)
        if records:
            self.upsert_conversation(conversation_id, last_message=records[-1])
        return added

    # Live streams

    def _on_conversation(self, generation: int):
        async def handle(conversation: Any) -> None:
            if not self._is_live(generation) or not _in_scope(conversation):
                return
            await self._ingest_conversation(conversation, generation)

        return handle

    def _on_message(self, generation: int):
        async def handle(message: Any) -> None:
            if not self._is_live(generation):
                return
            try:
                record = to_message_record(message)
            except (AttributeError, TypeError, ValueError):
                logger.warning("dropping malformed streamed message", exc_info=True)
                return
            if record.conversation_id not in self._conversations:
                if not await self._fetch_missing_conversation(record.conversation_id, generation):
                    return
            if self._is_live(generation):
                self._ingest_message(record)

        return handle

    async def _fetch_missing_conversation(self, conversation_id: str, generation: int) -> bool:
        """Load a conversation first seen through a message; False drops the message."""

        try:
            conversation = await self._client.get_conversation(conversation_id)
        except Exception:
            logger.warning("on-demand fetch failed for %s", conversation_id, exc_info=True)
            return self._is_live(generation)
        if conversation is None:
            logger.warning("conversation %s not found; keeping message without peer", conversation_id)
            return self._is_live(generation)
        if not _in_scope(conversation):
            return False
        await self._ingest_conversation(conversation, generation)
        return self._is_live(generation)

    async def open_live_streams(self) -> None:
        if self._state == STATE_CLOSED:
            raise RuntimeError("store is closed")
        if self._state in (STATE_UNINITIALIZED, STATE_BULK_LOADING):
            raise RuntimeError("bulk load must complete before streaming")
        if self._stream_handles and all(handle.active for handle in self._stream_handles):
            return
        if self._stream_handles:
            logger.debug("replacing ended live streams")
            await self.close_live_streams()
        generation = self._generation
        handles: List[StreamHandle] = []
        try:
            stream = self._client.stream_conversations(kind=CONVERSATION_DM)
            handles.append(stream.start(self._on_conversation(generation)))
        except Exception:
            logger.warning("could not open the conversation stream", exc_info=True)
        try:
            stream = self._client.stream_all_messages(kind=CONVERSATION_DM, consent_states=(CONSENT_ALLOWED,))
            handles.append(stream.start(self._on_message(generation)))
        except Exception:
            logger.warning("could not open the message stream", exc_info=True)
        self._stream_handles = handles
        self._state = STATE_STREAMING
        # Let both pumps reach their first await so the subscriptions exist.
        await asyncio.sleep(0)
        logger.debug("live streams open (%d)", len(handles))

    async def close_live_streams(self) -> None:
        self._generation += 1
        handles, self._stream_handles = self._stream_handles, []
        await asyncio.gather(*(handle.cancel() for handle in handles))
        if self._state == STATE_STREAMING:
            self._state = STATE_LOADED
        if handles:
            logger.debug("live streams closed")

    async def start(self) -> None:
        await self.bulk_load()
        await self.open_live_streams()

    async def close(self) -> None:
        """Tear down streams and drop every cache tied to this client."""

        await self.close_live_streams()
        self._state = STATE_CLOSED
        for task in list(self._lookups.values()):
            task.cancel()
        self._lookups.clear()
        self._identities.clear()
        self._negative.clear()
        self._handles.clear()
        self._listeners.clear()

    # Sending

    async def resolve_destination(self, identifier: str) -> str:
        if is_direct_identifier(identifier):
            return identifier
        failure = f'Could not resolve "{identifier}". {RESOLUTION_HINT}'
        if self._name_resolver is None:
            raise SendError(failure)
        try:
            resolved = await self._name_resolver.resolve_name(identifier)
        except Exception as exc:
            logger.warning("name resolution failed for %s", identifier, exc_info=True)
            raise SendError(failure) from exc
        if not resolved:
            raise SendError(failure)
        return resolved

    async def send(self, target: str, content: str) -> MessageRecord:
        """Send to a known conversation id, or open a conversation with a new peer."""

        if target in self._conversations or target in self._handles:
            return await self.send_to_conversation(target, content)
        return await self.send_to_peer(target, content)

    async def send_to_conversation(self, conversation_id: str, content: str) -> MessageRecord:
        if self._state == STATE_CLOSED:
            raise SendError("The network client is disconnected.")
        conversation = self._handles.get(conversation_id)
        if conversation is None:
            try:
                conversation = await self._client.get_conversation(conversation_id)
            except Exception as exc:
                logger.error("could not open conversation %s", conversation_id, exc_info=True)
                raise SendError(_describe(exc, "Failed to send.")) from exc
            if conversation is None:
                raise SendError("This conversation is no longer available.")
            self._handles[conversation_id] = conversation

        try:
            message = await conversation.send(content)
        except Exception as exc:
            logger.error("send to %s failed", conversation_id, exc_info=True)
            raise SendError(_describe(exc, "Failed to send.")) from exc
        try:
            record = to_message_record(message)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.error("unreadable send confirmation from %s", conversation_id, exc_info=True)
            raise SendError("The network did not confirm the message.") from exc

        if self._state != STATE_CLOSED:
            self._ingest_message(record)
        return record

    async def send_to_peer(self, identifier: str, content: str) -> MessageRecord:
        if self._state == STATE_CLOSED:
            raise SendError("The network client is disconnected.")
        address = await self.resolve_destination(identifier)
        try:
            conversation = await self._client.create_direct_conversation(address)
        except Exception as exc:
            logger.error("could not start a conversation with %s", address, exc_info=True)
            raise SendError(_describe(exc, "Failed to start the conversation.")) from exc

        conversation_id = str(conversation.id)
        self._handles[conversation_id] = conversation
        await self._ingest_conversation(conversation, self._generation, fetch_last_message=False)
        return await self.send_to_conversation(conversation_id, content)
