import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import ChannelNotFoundError, LoginError, TransportError

"""
transport.py — the broadcast channel contract the session talks to.

The session never cares *what* carries its envelopes. It needs:
- connect(credentials): log in; on success a "ready" event follows.
- fetch_channel(channel_id): a handle for the shared channel.
- send(channel, envelope): fire-and-forget, UTF-8 JSON text.
- events: "ready", "message"(text), "rateLimit"(timeout_ms), "invalidated".

Events go through a per-transport queue drained by a single pump task, so
handlers attached to one transport run strictly one after another. That's
what lets the session treat every event as atomic.

LocalBus is an in-memory broadcast channel (tests, demos). The TCP relay in
relay.py is the networked one.
"""

logger = logging.getLogger(__name__)

READY = "ready"
MESSAGE = "message"
RATE_LIMIT = "rateLimit"
INVALIDATED = "invalidated"
EVENTS = (READY, MESSAGE, RATE_LIMIT, INVALIDATED)


@dataclass(frozen=True)
class ChannelHandle:
    """Opaque token for a fetched channel; only the id is meaningful to us."""
    channel_id: str


def encode_outgoing(envelope: Any) -> str:
    """Envelope objects know their wire form; plain dicts get compact JSON."""
    if hasattr(envelope, "to_json"):
        return envelope.to_json()
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False)


class Transport(ABC):
    """Base class: event registration + a sequential event pump."""
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._events: "asyncio.Queue[Tuple[str, tuple]]" = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # -----------------
    # Event registration
    # -----------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        if event not in EVENTS:
            raise ValueError(f"unknown transport event: {event}")
        self._listeners[event].append(handler)

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        try:
            self._listeners[event].remove(handler)
        except ValueError:
            pass

    def remove_all_listeners(self) -> None:
        self._listeners.clear()

    def listener_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(h) for h in self._listeners.values())

    def emit(self, event: str, *args: Any) -> None:
        """Queue an event for the pump. Must be called from the event loop."""
        if not self._listeners.get(event):
            return
        if self._pump is None or self._pump.done():
            self._pump = asyncio.get_running_loop().create_task(self._run_pump())
        self._pending += 1
        self._idle.clear()
        self._events.put_nowait((event, args))

    async def _run_pump(self) -> None:
        while True:
            event, args = await self._events.get()
            try:
                for handler in list(self._listeners.get(event, ())):
                    try:
                        result = handler(*args)
                        if inspect.isawaitable(result):
                            await result
                    except Exception:
                        # One bad handler must not kill delivery for the rest.
                        logger.exception("Handler for %r event failed", event)
            finally:
                self._pending -= 1
                if self._pending == 0:
                    self._idle.set()

    @property
    def idle(self) -> bool:
        return self._pending == 0

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        await self._idle.wait()

    async def _stop_pump(self) -> None:
        pump, self._pump = self._pump, None
        if pump is None or pump is asyncio.current_task():
            return
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass
        # Whatever was still queued will never be handled now.
        while not self._events.empty():
            self._events.get_nowait()
        self._pending = 0
        self._idle.set()

    # -------------
    # Contract
    # -------------

    @abstractmethod
    async def connect(self, credentials: str) -> None:
        """Log in. Raises LoginError / TransportError; emits READY on success."""

    @abstractmethod
    async def fetch_channel(self, channel_id: str) -> ChannelHandle:
        """Raises ChannelNotFoundError if the channel doesn't exist."""

    @abstractmethod
    async def send(self, channel: ChannelHandle, envelope: Any) -> None:
        """Publish one envelope as JSON text on the channel."""

    @abstractmethod
    async def close(self) -> None:
        """Drop the connection and stop delivering events."""


# -------------------------
# In-memory broadcast channel
# -------------------------

class LocalBus:
    """
    Every transport that fetched a channel gets every message published on it,
    its own included (like a hosted chat room would echo it back).

    Args:
        channels: allowed channel ids; None means any id exists.
        tokens:   accepted login tokens; None means any non-empty token.
    """
    def __init__(self, channels: Optional[Set[str]] = None, tokens: Optional[Set[str]] = None) -> None:
        self.channels = set(channels) if channels is not None else None
        self.tokens = set(tokens) if tokens is not None else None
        self.published: List[Tuple[str, str]] = []  # (channel_id, text), in order
        self._members: Dict[str, List["LocalTransport"]] = defaultdict(list)
        self._transports: List["LocalTransport"] = []

    def transport(self) -> "LocalTransport":
        t = LocalTransport(self)
        self._transports.append(t)
        return t

    def accepts_token(self, token: str) -> bool:
        if not token:
            return False
        return self.tokens is None or token in self.tokens

    def has_channel(self, channel_id: str) -> bool:
        return self.channels is None or channel_id in self.channels

    def join(self, channel_id: str, member: "LocalTransport") -> None:
        if member not in self._members[channel_id]:
            self._members[channel_id].append(member)

    def leave(self, member: "LocalTransport") -> None:
        for members in self._members.values():
            if member in members:
                members.remove(member)

    def publish(self, channel_id: str, text: str) -> None:
        self.published.append((channel_id, text))
        for member in list(self._members.get(channel_id, ())):
            member.emit(MESSAGE, text)

    def rate_limit(self, member: "LocalTransport", timeout_ms: float) -> None:
        """Pretend the service throttled this member."""
        member.emit(RATE_LIMIT, timeout_ms)

    def invalidate(self, member: "LocalTransport") -> None:
        member.emit(INVALIDATED)

    async def settle(self) -> None:
        """Wait until no member has anything left to handle."""
        while True:
            for member in list(self._transports):
                await member.wait_idle()
            if all(member.idle for member in self._transports):
                return


class LocalTransport(Transport):
    def __init__(self, bus: LocalBus) -> None:
        super().__init__()
        self.bus = bus
        self.logged_in = False

    async def connect(self, credentials: str) -> None:
        if not self.bus.accepts_token(credentials):
            raise LoginError("token rejected")
        self.logged_in = True
        self.emit(READY)

    async def fetch_channel(self, channel_id: str) -> ChannelHandle:
        if not self.logged_in:
            raise TransportError("not logged in")
        if not self.bus.has_channel(channel_id):
            raise ChannelNotFoundError(f"unknown channel {channel_id}")
        self.bus.join(channel_id, self)
        return ChannelHandle(channel_id)

    async def send(self, channel: ChannelHandle, envelope: Any) -> None:
        if not self.logged_in:
            raise TransportError("not logged in")
        self.bus.publish(channel.channel_id, encode_outgoing(envelope))

    async def close(self) -> None:
        self.bus.leave(self)
        self.logged_in = False
        await self._stop_pump()
