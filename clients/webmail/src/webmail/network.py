"""Boundary helpers for the external network and name-resolution services.

The network client itself is a collaborator supplied by the caller. It is
expected to expose::

    inbox_id, address
    await list_conversations(kind=..., consent_states=...) -> [conversation]
    stream_conversations(kind=...) -> LiveStream
    stream_all_messages(kind=..., consent_states=...) -> LiveStream
    await get_conversation(conversation_id) -> conversation | None
    await create_direct_conversation(identifier) -> conversation
    await resolve_identities(inbox_ids) -> [identity state]

and conversations expose ``id``, ``kind``, ``consent_state``,
``peer_inbox_id``, ``created_at_ns``, ``await send(content)`` and
``await messages(limit=None, descending=False)``. Messages expose ``id``,
``conversation_id``, ``sender_inbox_id``, ``content`` and ``sent_at_ns``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from .addressing import is_direct_identifier
from .models import MessageRecord, PeerIdentity

logger = logging.getLogger(__name__)

CHAIN_IDENTIFIER_KINDS = {"ethereum", "eth", "address"}

ItemCallback = Callable[[Any], Awaitable[None]]


def _field(raw: Any, *names: str) -> Any:
    for name in names:
        if isinstance(raw, Mapping):
            if name in raw:
                return raw[name]
        elif hasattr(raw, name):
            return getattr(raw, name)
    return None


def normalize_identity_state(raw: Any, inbox_id: str) -> PeerIdentity:
    """Collapse the identity-state shapes returned by the network into one.

    Identifier lists may live under ``identifiers``, ``account_identifiers``
    or ``accountIdentifiers``; entries may be bare strings or records with an
    ``identifier`` plus a kind. The first chain-address entry wins.
    """

    entries = _field(raw, "identifiers", "account_identifiers", "accountIdentifiers", "addresses")
    if isinstance(entries, (str, bytes)) or not isinstance(entries, Iterable):
        entries = []

    raw_identifiers: List[str] = []
    display_address: Optional[str] = None
    for entry in entries:
        if isinstance(entry, str):
            value, kind = entry, None
        else:
            value = _field(entry, "identifier", "address", "value")
            kind = _field(entry, "identifier_kind", "identifierKind", "kind")
        if not isinstance(value, str) or not value:
            continue
        raw_identifiers.append(value)
        if display_address is not None:
            continue
        if isinstance(kind, str) and kind.lower() in CHAIN_IDENTIFIER_KINDS:
            display_address = value
        elif kind is None and is_direct_identifier(value):
            display_address = value

    resolved_inbox = _field(raw, "inbox_id", "inboxId")
    return PeerIdentity(
        inbox_id=resolved_inbox if isinstance(resolved_inbox, str) and resolved_inbox else inbox_id,
        display_address=display_address,
        raw_identifiers=tuple(raw_identifiers),
    )


def to_message_record(message: Any) -> MessageRecord:
    return MessageRecord(
        id=str(message.id),
        conversation_id=str(message.conversation_id),
        sender_identifier=str(message.sender_inbox_id),
        content=message.content,
        sent_at_ns=int(message.sent_at_ns),
    )


class NameResolver:
    """Name-resolution collaborator: ``await resolve_name(name) -> address | None``."""

    async def resolve_name(self, name: str) -> Optional[str]:
        raise NotImplementedError


class StaticNameResolver(NameResolver):
    def __init__(self, names: Optional[Dict[str, str]] = None) -> None:
        self._names = {key.lower(): value for key, value in (names or {}).items()}

    def register(self, name: str, address: str) -> None:
        self._names[name.lower()] = address

    async def resolve_name(self, name: str) -> Optional[str]:
        return self._names.get(name.lower())


class StreamHandle:
    """Running subscription; ``cancel()`` stops delivery and closes the source."""

    def __init__(self, name: str, task: "asyncio.Task[None]") -> None:
        self.name = name
        self._task = task
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled and not self._task.done()

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class LiveStream:
    """A not-yet-started subscription over an async generator source."""

    def __init__(self, name: str, source: Callable[[], AsyncGenerator[Any, None]]) -> None:
        self.name = name
        self._source = source

    def start(self, on_item: ItemCallback) -> StreamHandle:
        task = asyncio.create_task(self._pump(on_item), name=f"stream:{self.name}")
        return StreamHandle(self.name, task)

    async def _pump(self, on_item: ItemCallback) -> None:
        iterator = self._source()
        try:
            async for item in iterator:
                try:
                    await on_item(item)
                except Exception:
                    logger.warning("stream %s: dropping an item its handler rejected", self.name, exc_info=True)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("stream %s ended with an error", self.name, exc_info=True)
        finally:
            await iterator.aclose()
