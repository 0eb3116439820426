"""UI-facing mailbox: store lifecycle, search, selection, compose and reply."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional

from .addressing import KIND_INVALID, KIND_UNSUPPORTED, parse_recipient
from .config import WebmailConfig
from .envelope import encode_envelope, reply_subject
from .models import MessageRecord
from .network import NameResolver
from .projection import (
    WELCOME_ID,
    ConversationListItem,
    ThreadEntry,
    project,
    reconcile_selection,
    thread_view,
    welcome_thread,
)
from .store import ConversationStore, SendError

logger = logging.getLogger(__name__)

NO_SUBJECT = "(no subject)"
UNSUPPORTED_RECIPIENT = (
    "SMTP delivery is not wired up yet. Use an @xmtp.mx address or an onchain address/ENS name."
)
NOT_CONNECTED = "Connect a wallet before sending."


class Mailbox:
    """Binds one ``ConversationStore`` to the current client handle.

    ``attach()`` builds a fresh store for a new client and ``detach()`` tears
    it down, so no state leaks from one identity to the next.
    """

    def __init__(
        self,
        config: Optional[WebmailConfig] = None,
        *,
        name_resolver: Optional[NameResolver] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or WebmailConfig()
        self._name_resolver = name_resolver
        self._clock = clock
        self.store: Optional[ConversationStore] = None
        self.search_query = ""
        self.selected_id: Optional[str] = None
        self._listeners: List[Callable[[], None]] = []

    @property
    def client(self) -> Any:
        return self.store.client if self.store is not None else None

    @property
    def self_identifier(self) -> Optional[str]:
        client = self.client
        return getattr(client, "inbox_id", None) if client is not None else None

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _on_store_change(self, conversation_id: str) -> None:
        for listener in list(self._listeners):
            listener()

    async def attach(self, client: Any) -> None:
        await self.detach()
        store = ConversationStore(
            client,
            name_resolver=self._name_resolver,
            negative_cache_ttl_seconds=self.config.negative_cache_ttl_seconds,
            negative_cache_max_entries=self.config.negative_cache_max_entries,
            clock=self._clock,
        )
        store.add_listener(self._on_store_change)
        self.store = store
        logger.debug("mailbox attached to %s", getattr(client, "inbox_id", "client"))
        await store.start()
        self.reconcile()

    async def detach(self) -> None:
        store, self.store = self.store, None
        if store is None:
            return
        await store.close()
        logger.debug("mailbox detached")
        self.reconcile()

    def conversation_list(self) -> List[ConversationListItem]:
        return project(self.store if self.store is not None else [], self.search_query)

    def reconcile(self) -> List[ConversationListItem]:
        """Re-project and repair the selection; returns the projected list."""

        items = self.conversation_list()
        self.selected_id = reconcile_selection(self.selected_id, items)
        return items

    def search(self, query: str) -> List[ConversationListItem]:
        self.search_query = query or ""
        return self.reconcile()

    async def select(self, conversation_id: Optional[str]) -> Optional[str]:
        self.selected_id = conversation_id
        self.reconcile()
        if self.selected_id is not None and self.selected_id != WELCOME_ID and self.store is not None:
            await self.store.load_history(self.selected_id)
        return self.selected_id

    def thread(self, conversation_id: Optional[str] = None) -> List[ThreadEntry]:
        target = conversation_id or self.selected_id
        if target is None:
            return []
        if target == WELCOME_ID or self.store is None:
            return welcome_thread() if target == WELCOME_ID else []
        return thread_view(self.store, target, self.self_identifier)

    def _require_store(self) -> ConversationStore:
        if self.store is None:
            raise SendError(NOT_CONNECTED)
        return self.store

    async def compose(self, to: str, subject: str, body: str) -> MessageRecord:
        """Send a new message; recipient problems fail before any network call."""

        recipient = parse_recipient(to, self.config.bridge_domain)
        if recipient.kind == KIND_INVALID:
            raise SendError(recipient.reason or "Invalid recipient.")
        if recipient.kind == KIND_UNSUPPORTED:
            raise SendError(UNSUPPORTED_RECIPIENT)

        store = self._require_store()
        content = encode_envelope(
            (subject or "").strip() or NO_SUBJECT,
            body,
            from_address=getattr(store.client, "address", None),
            to_address=to.strip(),
        )
        record = await store.send_to_peer(recipient.identifier, content)
        self.selected_id = record.conversation_id
        self.reconcile()
        return record

    async def reply(self, conversation_id: str, body: str) -> Optional[MessageRecord]:
        """Reply in an existing thread; a blank body sends nothing."""

        text = (body or "").strip()
        if not text:
            return None
        if conversation_id == WELCOME_ID:
            raise SendError("The welcome message cannot be replied to.")

        store = self._require_store()
        record = store.get_conversation(conversation_id)
        subject = reply_subject([message.content for message in store.messages(conversation_id)])
        peer = (record.peer_display_address or record.peer_identifier) if record is not None else None
        content = encode_envelope(
            subject or "",
            text,
            from_address=getattr(store.client, "address", None),
            to_address=peer,
        )
        return await store.send_to_conversation(conversation_id, content)
