import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Set, Tuple

from .errors import ChannelNotFoundError, LoginError, TransportError
from .framing import read_frame, write_frame
from .transport import (INVALIDATED, MESSAGE, RATE_LIMIT, READY, ChannelHandle,
                        Transport, encode_outgoing)

"""
relay.py — a self-hosted broadcast channel over TCP, plus its client transport.

The relay is deliberately dumb: it checks a login token, hands out channel
handles, and fans every SEND out to everyone on that channel (sender
included). It never looks inside the content. Addressing and encryption are
the peers' business.

Frames (see framing.py), client -> relay:
    LOGIN{token}  FETCH_CHANNEL{channel}  SEND{channel, content}
relay -> client:
    READY  LOGIN_FAILED{reason}  CHANNEL{channel}  NOT_FOUND{channel}
    MESSAGE{channel, content}  RATE_LIMIT{timeout_ms}

Rate limiting is a per-connection sliding window: more than `max_messages`
SENDs inside `window_seconds` gets a RATE_LIMIT telling the client how long
to wait. The over-limit SEND is not lost: it waits in a per-connection queue
and goes out, in order, once the window has room again.
"""

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0  # seconds to wait for READY / CHANNEL replies
MAX_PENDING = 1000  # queued over-limit SENDs per connection


class ConnectionContext:
    """Reader/writer pair plus what this connection has been allowed to do."""
    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.logged_in = False
        self.channels: Set[str] = set()
        self.sent_at: Deque[float] = deque()
        self.pending: Deque[Tuple[str, str]] = deque()
        self.flush_task: Optional[asyncio.Task] = None


class RelayServer:
    """
    Args:
        tokens:   accepted login tokens; None accepts any non-empty token.
        channels: channel ids that exist; None means any id exists.
    """
    def __init__(
        self,
        host: str,
        port: int,
        tokens: Optional[Set[str]] = None,
        channels: Optional[Set[str]] = None,
        max_messages: int = 5,
        window_seconds: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self.tokens = set(tokens) if tokens else None
        self.channels = set(channels) if channels else None
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self.conn_to_ctx: Dict[asyncio.StreamWriter, ConnectionContext] = {}
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        """Bind and start accepting. With port 0 the real port is stored back."""
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        sockets = self._server.sockets or []
        if sockets:
            self.port = sockets[0].getsockname()[1]
        addrs = ", ".join(str(sock.getsockname()) for sock in sockets)
        logger.info("Relay listening on %s", addrs)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for writer, ctx in list(self.conn_to_ctx.items()):
            self._stop_flush(ctx)
            writer.close()
        await self._server.wait_closed()
        self._server = None

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read frames and pass to process_frame()."""
        ctx = ConnectionContext(reader, writer)
        self.conn_to_ctx[writer] = ctx
        try:
            while True:
                frame = await read_frame(reader)
                await self.process_frame(ctx, frame)
        except (asyncio.IncompleteReadError, ConnectionError):
            # Client went away; nothing to do.
            pass
        except ValueError as exc:
            logger.warning("Dropping connection after bad frame: %s", exc)
        finally:
            self._stop_flush(ctx)
            self.conn_to_ctx.pop(writer, None)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    def accepts_token(self, token: Any) -> bool:
        if not isinstance(token, str) or not token:
            return False
        return self.tokens is None or token in self.tokens

    def has_channel(self, channel_id: Any) -> bool:
        if not isinstance(channel_id, str) or not channel_id:
            return False
        return self.channels is None or channel_id in self.channels

    def _throttle_ms(self, ctx: ConnectionContext) -> int:
        """0 if the window has room for a SEND, otherwise milliseconds until it will."""
        now = time.monotonic()
        while ctx.sent_at and now - ctx.sent_at[0] >= self.window_seconds:
            ctx.sent_at.popleft()
        if len(ctx.sent_at) < self.max_messages:
            return 0
        return max(1, int((ctx.sent_at[0] + self.window_seconds - now) * 1000))

    async def _deliver(self, ctx: ConnectionContext, channel_id: str, content: str) -> None:
        ctx.sent_at.append(time.monotonic())
        await self.broadcast(channel_id, {"type": "MESSAGE", "channel": channel_id, "content": content})

    async def _flush_pending(self, ctx: ConnectionContext) -> None:
        """Send queued SENDs as the window frees up. The head stays queued until it
        is out, so a SEND arriving meanwhile lines up behind it."""
        while ctx.pending:
            wait_ms = self._throttle_ms(ctx)
            if wait_ms:
                await asyncio.sleep(wait_ms / 1000)
                continue
            channel_id, content = ctx.pending[0]
            await self._deliver(ctx, channel_id, content)
            ctx.pending.popleft()

    def _stop_flush(self, ctx: ConnectionContext) -> None:
        ctx.pending.clear()
        if ctx.flush_task is not None:
            ctx.flush_task.cancel()
            ctx.flush_task = None

    async def process_frame(self, ctx: ConnectionContext, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("type")

        if frame_type == "LOGIN":
            if self.accepts_token(frame.get("token")):
                ctx.logged_in = True
                await write_frame(ctx.writer, {"type": "READY"})
            else:
                await write_frame(ctx.writer, {"type": "LOGIN_FAILED", "reason": "invalid token"})
            return

        if not ctx.logged_in:
            await write_frame(ctx.writer, {"type": "LOGIN_FAILED", "reason": "login required"})
            return

        if frame_type == "FETCH_CHANNEL":
            channel_id = frame.get("channel")
            if self.has_channel(channel_id):
                ctx.channels.add(channel_id)
                await write_frame(ctx.writer, {"type": "CHANNEL", "channel": channel_id})
            else:
                await write_frame(ctx.writer, {"type": "NOT_FOUND", "channel": channel_id})
            return

        if frame_type == "SEND":
            channel_id = frame.get("channel")
            content = frame.get("content")
            if channel_id not in ctx.channels or not isinstance(content, str):
                return
            wait_ms = self._throttle_ms(ctx)
            if not wait_ms and not ctx.pending:
                await self._deliver(ctx, channel_id, content)
                return
            if len(ctx.pending) >= MAX_PENDING:
                logger.warning("Send queue full; dropping a SEND on %s", channel_id)
            else:
                ctx.pending.append((channel_id, content))
            if ctx.flush_task is None or ctx.flush_task.done():
                ctx.flush_task = asyncio.create_task(self._flush_pending(ctx))
            if wait_ms:
                await write_frame(ctx.writer, {"type": "RATE_LIMIT", "timeout_ms": wait_ms})
            return

        logger.debug("Ignoring unknown frame type %r", frame_type)

    async def broadcast(self, channel_id: str, frame: Dict[str, Any]) -> None:
        """Best-effort write to everyone on the channel. Dead sockets are skipped."""
        for writer, ctx in list(self.conn_to_ctx.items()):
            if channel_id not in ctx.channels:
                continue
            try:
                await write_frame(writer, frame)
            except (ConnectionError, OSError) as exc:
                logger.debug("Broadcast to a closed connection failed: %s", exc)


class RelayTransport(Transport):
    """Client side of the relay, speaking the Transport contract."""
    def __init__(self, host: str, port: int, request_timeout: float = REQUEST_TIMEOUT) -> None:
        super().__init__()
        self.host = host
        self.port = port
        self.request_timeout = request_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._login: Optional[asyncio.Future] = None
        self._fetches: Dict[str, asyncio.Future] = {}
        self._closing = False

    async def connect(self, credentials: str) -> None:
        try:
            self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        except OSError as exc:
            raise TransportError(f"cannot reach relay {self.host}:{self.port}: {exc}") from exc

        self._closing = False
        self._login = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._reader_loop())
        await self._write({"type": "LOGIN", "token": credentials})

        try:
            ok, reason = await asyncio.wait_for(self._login, self.request_timeout)
        except asyncio.TimeoutError as exc:
            await self._teardown()
            raise LoginError("relay did not answer LOGIN") from exc
        except TransportError:
            await self._teardown()
            raise
        if not ok:
            await self._teardown()
            raise LoginError(reason or "login failed")
        self.emit(READY)

    async def fetch_channel(self, channel_id: str) -> ChannelHandle:
        fut = asyncio.get_running_loop().create_future()
        self._fetches[channel_id] = fut
        await self._write({"type": "FETCH_CHANNEL", "channel": channel_id})
        try:
            found = await asyncio.wait_for(fut, self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"relay did not answer FETCH_CHANNEL {channel_id}") from exc
        finally:
            self._fetches.pop(channel_id, None)
        if not found:
            raise ChannelNotFoundError(f"unknown channel {channel_id}")
        return ChannelHandle(channel_id)

    async def send(self, channel: ChannelHandle, envelope: Any) -> None:
        await self._write({"type": "SEND", "channel": channel.channel_id,
                           "content": encode_outgoing(envelope)})

    async def close(self) -> None:
        self._closing = True
        await self._teardown()
        await self._stop_pump()

    async def _write(self, frame: Dict[str, Any]) -> None:
        if self._writer is None or self._writer.is_closing():
            raise TransportError("not connected to relay")
        try:
            await write_frame(self._writer, frame)
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"relay write failed: {exc}") from exc

    async def _reader_loop(self) -> None:
        """Turn relay frames into replies for pending requests or into events."""
        try:
            while True:
                frame = await read_frame(self._reader)
                frame_type = frame.get("type")
                if frame_type == "READY":
                    self._resolve_login(True, None)
                elif frame_type == "LOGIN_FAILED":
                    self._resolve_login(False, frame.get("reason"))
                elif frame_type in ("CHANNEL", "NOT_FOUND"):
                    fut = self._fetches.get(frame.get("channel"))
                    if fut is not None and not fut.done():
                        fut.set_result(frame_type == "CHANNEL")
                elif frame_type == "MESSAGE":
                    content = frame.get("content")
                    if isinstance(content, str):
                        self.emit(MESSAGE, content)
                elif frame_type == "RATE_LIMIT":
                    self.emit(RATE_LIMIT, frame.get("timeout_ms", 0))
        except (asyncio.IncompleteReadError, ConnectionError, ValueError) as exc:
            if not self._closing:
                logger.warning("Relay connection lost: %s", exc)
                self._fail_pending(TransportError("relay connection lost"))
                self.emit(INVALIDATED)

    def _resolve_login(self, ok: bool, reason: Optional[str]) -> None:
        if self._login is not None and not self._login.done():
            self._login.set_result((ok, reason))

    def _fail_pending(self, exc: Exception) -> None:
        if self._login is not None and not self._login.done():
            self._login.set_exception(exc)
        for fut in self._fetches.values():
            if not fut.done():
                fut.set_exception(exc)

    async def _teardown(self) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
