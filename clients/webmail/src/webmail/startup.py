"""Dependency-ordered startup: security module, provider id, wallet, client."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from .config import WebmailConfig
from .provider_check import (
    PROVIDER_CHECKING,
    PROVIDER_INVALID,
    PROVIDER_MISSING,
    PROVIDER_VALID,
    ProviderCheck,
    validate_provider_id,
)

logger = logging.getLogger(__name__)

SECURITY_LOADING = "loading"
SECURITY_READY = "ready"
SECURITY_FAILED = "failed"

WALLET_DISCONNECTED = "disconnected"
WALLET_CONNECTED = "connected"

CLIENT_IDLE = "idle"
CLIENT_INITIALIZING = "initializing"
CLIENT_READY = "ready"
CLIENT_FAILED = "failed"

SecurityLoader = Callable[[], Awaitable[None]]
ClientFactory = Callable[[Any, str], Awaitable[Any]]
ProviderValidator = Callable[[str], Awaitable[ProviderCheck]]
ClientHook = Callable[[Any], Awaitable[None]]


def _describe(exc: BaseException) -> str:
    return str(exc).strip() or "Unknown error"


class ReadinessSequencer:
    """Tracks each startup phase and gates network-client creation.

    Failures never raise out of the phase methods; they land in the
    ``*_state``/``*_error`` attributes so the display layer can show them
    and offer a retry through ``initialize_client()``.
    """

    def __init__(
        self,
        config: WebmailConfig,
        *,
        load_security_module: SecurityLoader,
        create_client: ClientFactory,
        validate_provider: Optional[ProviderValidator] = None,
        on_client_ready: Optional[ClientHook] = None,
        on_client_closed: Optional[ClientHook] = None,
    ) -> None:
        self.config = config
        self._load_security_module = load_security_module
        self._create_client = create_client
        self._validate_provider = validate_provider or self._default_validator
        self._on_client_ready = on_client_ready
        self._on_client_closed = on_client_closed
        self._listeners: List[Callable[[], None]] = []

        self.security_state = SECURITY_LOADING
        self.security_error: Optional[str] = None
        self.security_stalled = False

        self.provider_state = PROVIDER_CHECKING if config.identity_provider_id.strip() else PROVIDER_MISSING
        self.provider_error: Optional[str] = None

        self.wallet_state = WALLET_DISCONNECTED
        self.wallet_address: Optional[str] = None
        self._signer: Any = None
        self._wallet_session = 0

        self.client_state = CLIENT_IDLE
        self.client: Any = None
        self.client_error: Optional[str] = None
        self.client_stalled = False

    async def _default_validator(self, client_id: str) -> ProviderCheck:
        return await validate_provider_id(
            client_id,
            rpc_url=self.config.identity_provider_rpc_url,
            timeout_seconds=self.config.provider_check_timeout_seconds,
        )

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    async def _stall_watch(self, attribute: str) -> None:
        try:
            await asyncio.sleep(self.config.stall_threshold_seconds)
        except asyncio.CancelledError:
            return
        setattr(self, attribute, True)
        logger.debug("%s: still pending after %.0fs", attribute, self.config.stall_threshold_seconds)
        self._changed()

    async def _stop_watch(self, watcher: "asyncio.Task[None]") -> None:
        watcher.cancel()
        try:
            await watcher
        except asyncio.CancelledError:
            pass

    async def load_security_module(self) -> bool:
        started = time.monotonic()
        self.security_state = SECURITY_LOADING
        self.security_error = None
        self.security_stalled = False
        self._changed()
        watcher = asyncio.create_task(self._stall_watch("security_stalled"))
        try:
            await self._load_security_module()
        except Exception as exc:
            self.security_state = SECURITY_FAILED
            self.security_error = _describe(exc)
            logger.error("security module failed to initialize", exc_info=True)
            return False
        else:
            self.security_state = SECURITY_READY
            logger.debug("security module ready in %.0fms", (time.monotonic() - started) * 1000)
            return True
        finally:
            await self._stop_watch(watcher)
            self._changed()

    async def check_provider_id(self) -> str:
        client_id = self.config.identity_provider_id.strip()
        if not client_id:
            self.provider_state = PROVIDER_MISSING
            self.provider_error = None
            self._changed()
            return self.provider_state

        self.provider_state = PROVIDER_CHECKING
        self.provider_error = None
        self._changed()
        try:
            result = await self._validate_provider(client_id)
        except Exception as exc:
            logger.warning("identity provider id check raised", exc_info=True)
            result = ProviderCheck(PROVIDER_INVALID, _describe(exc))
        self.provider_state = result.status
        self.provider_error = result.error
        logger.debug("identity provider id %s", result.status)
        self._changed()
        return self.provider_state

    async def run(self) -> None:
        """Run the security module and provider checks, then try the client."""

        await asyncio.gather(self.load_security_module(), self.check_provider_id())
        await self.initialize_client()

    def blocked_reason(self) -> Optional[str]:
        if self.security_state != SECURITY_READY:
            return "security module not ready"
        if self.provider_state != PROVIDER_VALID:
            return "identity provider id not valid"
        if self.wallet_state != WALLET_CONNECTED:
            return "wallet not connected"
        if self.client_state == CLIENT_READY:
            return "client already initialized"
        if self.client_state == CLIENT_INITIALIZING:
            return "already initializing"
        return None

    def can_initialize(self) -> bool:
        return self.blocked_reason() is None

    async def connect_wallet(self, signer: Any, address: Optional[str] = None) -> bool:
        self._signer = signer
        self._wallet_session += 1
        self.wallet_state = WALLET_CONNECTED
        self.wallet_address = address
        self._changed()
        return await self.initialize_client()

    async def disconnect_wallet(self) -> None:
        """Drop the wallet and its client.

        A client still being created stays ``initializing`` until that
        attempt returns; the attempt then discards it as stale.
        """

        client = self.client
        self._signer = None
        self._wallet_session += 1
        self.wallet_state = WALLET_DISCONNECTED
        self.wallet_address = None
        self.client = None
        if self.client_state != CLIENT_INITIALIZING:
            self.client_state = CLIENT_IDLE
            self.client_stalled = False
        self.client_error = None
        if client is not None and self._on_client_closed is not None:
            await self._on_client_closed(client)
        self._changed()

    def _is_current(self, session: int) -> bool:
        return self.wallet_state == WALLET_CONNECTED and session == self._wallet_session

    async def _discard_stale(self, client: Any) -> bool:
        self.client_state = CLIENT_IDLE
        self.client_stalled = False
        self._changed()
        if client is not None and self._on_client_closed is not None:
            await self._on_client_closed(client)
        if self.wallet_state != WALLET_CONNECTED:
            return False
        logger.debug("client init restarting for the newly connected wallet")
        return await self.initialize_client()

    async def initialize_client(self) -> bool:
        """Create the network client if every prerequisite is met.

        Safe to call repeatedly; calling it after a failure is the retry path.
        A client created for a wallet that was disconnected in the meantime is
        handed to ``on_client_closed`` and never adopted; if another wallet is
        connected by then, initialization starts over for it.
        """

        reason = self.blocked_reason()
        if reason is not None:
            logger.debug("client init skipped: %s", reason)
            return False

        started = time.monotonic()
        session = self._wallet_session
        self.client_state = CLIENT_INITIALIZING
        self.client_error = None
        self.client_stalled = False
        self._changed()
        logger.debug("client init starting (env=%s)", self.config.network_env)
        watcher = asyncio.create_task(self._stall_watch("client_stalled"))
        try:
            try:
                client = await self._create_client(self._signer, self.config.network_env)
            finally:
                await self._stop_watch(watcher)
        except Exception as exc:
            if not self._is_current(session):
                logger.debug("client init for a disconnected wallet failed", exc_info=True)
                return await self._discard_stale(None)
            self.client_state = CLIENT_FAILED
            self.client_error = _describe(exc)
            logger.error("network client failed to initialize", exc_info=True)
            self._changed()
            return False

        if not self._is_current(session):
            logger.debug("discarding client created for a disconnected wallet")
            return await self._discard_stale(client)

        try:
            if self._on_client_ready is not None:
                await self._on_client_ready(client)
        except Exception as exc:
            self.client_state = CLIENT_FAILED
            self.client_error = _describe(exc)
            logger.error("network client failed to initialize", exc_info=True)
            self._changed()
            return False

        self.client = client
        self.client_state = CLIENT_READY
        logger.debug("client ready in %.0fms", (time.monotonic() - started) * 1000)
        self._changed()
        return True
