import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from . import messages as m
from .config import Config
from .crypto import SharedKeyCache, b64encode, decode_public_key, decrypt, encrypt, short_key
from .errors import DecryptionError, ProtocolParseError, StateError, TransportError
from .identity import Identity, create_identity
from .lifecycle import DEFAULT_LOGIN_FAILURE_COOLDOWN, ConnectionLifecycle, ConnectionStatus
from .registry import MasterKey, PeerKeyRegistry
from .relay import RelayTransport
from .transport import INVALIDATED, MESSAGE, RATE_LIMIT, READY, ChannelHandle, Transport

"""
session.py — one identity talking on one shared channel.

A Session owns every bit of protocol state (peer keys, master key, connection
lock, shared-key cache) and wires it to a Transport's events:

- ready        -> fetch the channel, then broadcast handshakeRequest
- message      -> parse, filter (self / not-for-us), dispatch on the action
- rateLimit    -> back off for ceil(timeout/1000) seconds
- invalidated  -> logged only

Every handler runs under one asyncio.Lock, so two events never interleave
their effects on the registry, the master key or the lock state.
Decrypted payloads land in `inbox` (and the optional `on_payload` callback,
which runs after the lock is released so it may call transmit()).
"""

logger = logging.getLogger(__name__)

PayloadCallback = Callable[["Delivery"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Delivery:
    """A payload that decrypted cleanly, and who sent it."""
    from_user_id: str
    payload: Any


class Session:
    def __init__(
        self,
        transport: Transport,
        channel_id: Optional[str],
        credentials: Optional[str],
        identity: Optional[Identity] = None,
        login_failure_cooldown: int = DEFAULT_LOGIN_FAILURE_COOLDOWN,
        auto_reconnect: bool = False,
        tick_interval: float = 1.0,
        on_payload: Optional[PayloadCallback] = None,
    ) -> None:
        self.transport = transport
        self.channel_id = channel_id
        self.credentials = credentials
        self.identity = identity or create_identity()
        self.auto_reconnect = auto_reconnect
        self.tick_interval = tick_interval
        self.on_payload = on_payload

        self.registry = PeerKeyRegistry()
        self.master = MasterKey()
        self.is_master = False
        self.lifecycle = ConnectionLifecycle(login_failure_cooldown)
        self.keys = SharedKeyCache()
        self.inbox: "asyncio.Queue[Delivery]" = asyncio.Queue()
        self.stats: Counter = Counter()

        self._lock = asyncio.Lock()
        self._cooldown_task: Optional[asyncio.Task] = None
        self._subscribed = False
        self._closed = False

    @classmethod
    def from_config(cls, config: Config, transport: Optional[Transport] = None, **kwargs: Any) -> "Session":
        """Build a session from Config; defaults to a RelayTransport at config.relay."""
        if transport is None:
            host, port = config.relay_address
            transport = RelayTransport(host, port)
        return cls(
            transport,
            config.channel_id,
            config.token,
            login_failure_cooldown=config.login_failure_cooldown,
            auto_reconnect=config.auto_reconnect,
            **kwargs,
        )

    # -------------
    # Read-only views
    # -------------

    @property
    def user_id(self) -> str:
        return self.identity.user_id

    @property
    def connected(self) -> bool:
        return self.lifecycle.connected

    @property
    def status_line(self) -> str:
        return f"whisperbus is {self.lifecycle.describe()}"

    @property
    def can_announce_master(self) -> bool:
        """Mirrors the 'Master' button: off once any master is known or we are it."""
        return self.connected and not self.master.is_set and not self.is_master

    def peers(self) -> Dict[str, str]:
        """user_id -> base64 public key, as a snapshot."""
        return {uid: b64encode(pk) for uid, pk in self.registry.snapshot().items()}

    # -----------------
    # Connection lifecycle
    # -----------------

    async def connect(self) -> bool:
        """
        Try to log in. Returns False (without touching the network) when the
        config is incomplete or a connect/cooldown is already holding the lock.
        Login failure is not raised: it puts us into backoff.
        """
        async with self._lock:
            if self._closed:
                raise StateError("session is closed")
            if not self.credentials or not self.lifecycle.can_connect(
                self.identity is not None, self.transport is not None, self.channel_id
            ):
                logger.info("Not connecting: %s", self._why_not_connecting())
                return False

            self.lifecycle.begin_connect()
            self._subscribe()
            logger.info("Logging in as %s", self.user_id)
            try:
                await self.transport.connect(self.credentials)
            except Exception as exc:
                logger.warning("Login failed: %r", exc)
                self._enter_backoff_after_failure()
                return False
            return True

    def _why_not_connecting(self) -> str:
        if not self.credentials:
            return "no credentials configured"
        if not self.channel_id:
            return "no channel id configured"
        return self.lifecycle.describe()

    def _subscribe(self) -> None:
        if self._subscribed:
            return
        self.transport.on(READY, self._on_ready)
        self.transport.on(MESSAGE, self.handle_message)
        self.transport.on(RATE_LIMIT, self._on_rate_limit)
        self.transport.on(INVALIDATED, self._on_invalidated)
        self._subscribed = True

    def _unsubscribe(self) -> None:
        self.transport.off(READY, self._on_ready)
        self.transport.off(MESSAGE, self.handle_message)
        self.transport.off(RATE_LIMIT, self._on_rate_limit)
        self.transport.off(INVALIDATED, self._on_invalidated)
        self._subscribed = False

    def _enter_backoff_after_failure(self) -> None:
        self.lifecycle.on_login_failure()
        self._start_cooldown()

    def _start_cooldown(self) -> None:
        if self._cooldown_task is None or self._cooldown_task.done():
            self._cooldown_task = asyncio.create_task(self._cooldown_loop())

    async def _cooldown_loop(self) -> None:
        released = False
        while not released:
            await asyncio.sleep(self.tick_interval)
            async with self._lock:
                released = self.lifecycle.tick()
                if self.lifecycle.status is not ConnectionStatus.RATE_LIMITED:
                    break
        # Let a failed reconnect below schedule a fresh cooldown task.
        self._cooldown_task = None
        if released and self.auto_reconnect and not self.connected and not self._closed:
            await self.connect()

    async def _on_ready(self) -> None:
        async with self._lock:
            try:
                channel = await self.transport.fetch_channel(self.channel_id)
            except Exception as exc:
                logger.warning("Could not fetch channel %s: %r", self.channel_id, exc)
                self._enter_backoff_after_failure()
                return
            self.lifecycle.on_connected(channel)
            logger.info("Connected to channel %s as %s", channel.channel_id, self.user_id)
            await self._broadcast_public_key(m.Action.HANDSHAKE_REQUEST)

    async def _on_rate_limit(self, timeout_ms: Any) -> None:
        try:
            timeout = float(timeout_ms)
        except (TypeError, ValueError):
            logger.warning("Ignoring rate limit notice with bad timeout %r", timeout_ms)
            return
        async with self._lock:
            self.lifecycle.on_rate_limit(timeout)
            self._start_cooldown()

    async def _on_invalidated(self) -> None:
        logger.warning("Transport session invalidated")

    # -------------
    # Inbound
    # -------------

    async def handle_message(self, text: Any) -> None:
        """Transport "message" handler: parse, filter, dispatch."""
        async with self._lock:
            try:
                env = m.parse_envelope(text)
            except ProtocolParseError as exc:
                self.stats["parse_errors"] += 1
                logger.debug("Ignoring non-envelope message: %s", exc)
                return
            if not m.is_addressed_to(env, self.user_id):
                self.stats["filtered"] += 1
                return
            delivery = await self._dispatch(env)

        if delivery is not None and self.on_payload is not None:
            try:
                result = self.on_payload(delivery)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("on_payload callback failed")

    async def _dispatch(self, env: m.Envelope) -> Optional[Delivery]:
        handlers = {
            m.Action.HANDSHAKE_REQUEST: self._on_handshake_request,
            m.Action.HANDSHAKE_ANSWER: self._on_handshake_answer,
            m.Action.SET_MASTER_KEY: self._on_set_master_key,
            m.Action.TRANSMIT: self._on_transmit,
            m.Action.STOP: self._on_stop,
            m.Action.UNKNOWN: self._on_unknown,
        }
        return await handlers[env.action](env)

    def _sender_key(self, env: m.Envelope) -> Optional[bytes]:
        data = env.data if isinstance(env.data, dict) else {}
        try:
            return decode_public_key(data.get("publicKey"))
        except ValueError as exc:
            self.stats["bad_public_keys"] += 1
            logger.warning("Bad publicKey in %s from %s: %s", env.raw_action, env.from_user_id, exc)
            return None

    async def _on_handshake_request(self, env: m.Envelope) -> None:
        public_key = self._sender_key(env)
        if public_key is None:
            return
        if not self.registry.add_if_absent(env.from_user_id, public_key):
            # Already exchanged keys; answering again would just cause storms.
            return
        logger.info("Handshake request from %s (%s)", env.from_user_id, short_key(public_key))
        await self._broadcast_public_key(m.Action.HANDSHAKE_ANSWER, to_user_id=env.from_user_id)

    async def _on_handshake_answer(self, env: m.Envelope) -> None:
        public_key = self._sender_key(env)
        if public_key is None:
            return
        if self.registry.add_if_absent(env.from_user_id, public_key):
            logger.info("Handshake answer from %s (%s)", env.from_user_id, short_key(public_key))

    async def _on_set_master_key(self, env: m.Envelope) -> None:
        public_key = self._sender_key(env)
        if public_key is None:
            return
        # No authority check: the last announcement wins.
        self.master.set(public_key, announced_by=env.from_user_id)
        logger.info("Master key set by %s (%s)", env.from_user_id, short_key(public_key))

    async def _on_transmit(self, env: m.Envelope) -> Optional[Delivery]:
        sender_key = self.registry.get(env.from_user_id)
        if sender_key is None:
            self.stats["dropped_unknown_sender"] += 1
            logger.debug("Dropping transmit from %s: no key exchanged yet", env.from_user_id)
            return None
        shared = self.keys.get(self.identity, sender_key)
        try:
            payload = decrypt(shared, env.data)
        except DecryptionError as exc:
            # Also what every non-recipient sees, since transmit is broadcast.
            self.stats["decrypt_failures"] += 1
            logger.debug("Could not decrypt transmit from %s: %s", env.from_user_id, exc)
            return None
        self.stats["received"] += 1
        delivery = Delivery(env.from_user_id, payload)
        self.inbox.put_nowait(delivery)
        logger.info("Received payload from %s", env.from_user_id)
        return delivery

    async def _on_stop(self, env: m.Envelope) -> None:
        # Registry is append-only; the peer's key stays for this session.
        logger.info("%s left the channel", env.from_user_id)

    async def _on_unknown(self, env: m.Envelope) -> None:
        self.stats["unknown_actions"] += 1
        logger.debug("Ignoring unknown action %r from %s", env.raw_action, env.from_user_id)

    # -------------
    # Outbound
    # -------------

    def _require_channel(self) -> ChannelHandle:
        channel = self.lifecycle.channel
        if channel is None:
            raise StateError("not connected to a channel")
        return channel

    async def _broadcast_public_key(self, action: m.Action, to_user_id: Optional[str] = None) -> None:
        """Send {publicKey} for handshake/stop messages; failures are only logged."""
        channel = self.lifecycle.channel
        if channel is None:
            logger.debug("No channel; not sending %s", action.value)
            return
        env = m.new_envelope(action, self.user_id, m.public_key_body(self.identity.public_key_b64),
                             to_user_id=to_user_id)
        try:
            await self.transport.send(channel, env)
        except TransportError as exc:
            logger.warning("Sending %s failed: %s", action.value, exc)

    async def announce_master(self) -> None:
        """Broadcast setMasterKey with our public key and mark ourselves as master."""
        async with self._lock:
            channel = self._require_channel()
            env = m.new_envelope(m.Action.SET_MASTER_KEY, self.user_id,
                                 m.public_key_body(self.identity.public_key_b64))
            await self.transport.send(channel, env)
            self.is_master = True
            logger.info("Announced %s as master", self.user_id)

    async def transmit(self, payload: Any, recipient_public_key: Optional[bytes] = None) -> None:
        """
        Encrypt `payload` for one recipient (the master by default) and put it
        on the channel. Everyone receives it; only the recipient can read it.

        Raises:
            StateError: no channel yet, or no recipient and no master known.
            TransportError: the transport refused the send.
        """
        async with self._lock:
            channel = self._require_channel()
            recipient = recipient_public_key if recipient_public_key is not None else self.master.get()
            if recipient is None:
                raise StateError("no recipient given and no master key announced")
            shared = self.keys.get(self.identity, recipient)
            env = m.new_envelope(m.Action.TRANSMIT, self.user_id, encrypt(shared, payload))
            await self.transport.send(channel, env)

    async def transmit_to(self, user_id: str, payload: Any) -> None:
        """transmit() to a peer we've already exchanged keys with."""
        public_key = self.registry.get(user_id)
        if public_key is None:
            raise StateError(f"no key exchanged with {user_id}")
        await self.transmit(payload, public_key)

    # -------------
    # Teardown
    # -------------

    async def close(self) -> None:
        """
        Stop ticking, tell the channel we're leaving (best effort), drop every
        listener and release the transport. Safe to call twice.
        """
        if self._closed:
            return
        self._closed = True

        task, self._cooldown_task = self._cooldown_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            await self._broadcast_public_key(m.Action.STOP)
            self._unsubscribe()
            self.lifecycle.on_disconnected()
        await self.transport.close()
        self.keys.clear()
        logger.info("Session %s closed", self.user_id)