import asyncio
import json

import pytest

from conftest import wait_until
from whisperbus.config import Config
from whisperbus.errors import ChannelNotFoundError, LoginError, TransportError
from whisperbus.framing import LENGTH_STRUCT, MAX_FRAME_SIZE, read_frame
from whisperbus.lifecycle import ConnectionStatus
from whisperbus.relay import RelayServer, RelayTransport
from whisperbus.session import Delivery, Session
from whisperbus.transport import ChannelHandle


async def start_relay(**kwargs):
    relay = RelayServer("127.0.0.1", 0, tokens={"t"}, channels={"lobby"}, **kwargs)
    await relay.start()
    return relay


def test_peers_exchange_keys_and_payloads_over_tcp():
    async def scenario():
        relay = await start_relay(max_messages=100)
        b = Session(RelayTransport("127.0.0.1", relay.port), "lobby", "t")
        a = Session(RelayTransport("127.0.0.1", relay.port), "lobby", "t")

        assert await b.connect()
        await wait_until(lambda: b.connected)
        assert await a.connect()
        await wait_until(lambda: a.user_id in b.registry and b.user_id in a.registry)

        await a.transmit({"test": True}, b.identity.public_key)
        delivery = await asyncio.wait_for(b.inbox.get(), 2.0)
        assert delivery == Delivery(a.user_id, {"test": True})

        await a.close()
        await b.close()
        await relay.stop()

    asyncio.run(scenario())


def test_bad_token_is_a_login_error():
    async def scenario():
        relay = await start_relay()
        transport = RelayTransport("127.0.0.1", relay.port)
        with pytest.raises(LoginError):
            await transport.connect("wrong")
        await transport.close()
        await relay.stop()

    asyncio.run(scenario())


def test_unknown_channel_is_not_found():
    async def scenario():
        relay = await start_relay()
        transport = RelayTransport("127.0.0.1", relay.port)
        await transport.connect("t")
        with pytest.raises(ChannelNotFoundError):
            await transport.fetch_channel("elsewhere")
        assert (await transport.fetch_channel("lobby")).channel_id == "lobby"
        await transport.close()
        await relay.stop()

    asyncio.run(scenario())


def test_unreachable_relay_backs_off():
    async def scenario():
        relay = await start_relay()
        port = relay.port
        await relay.stop()
        s = Session(RelayTransport("127.0.0.1", port), "lobby", "t")
        assert await s.connect() is False
        assert s.lifecycle.status is ConnectionStatus.RATE_LIMITED
        assert s.lifecycle.cooldown == 120
        await s.close()

    asyncio.run(scenario())


def test_send_without_connection_raises():
    async def scenario():
        transport = RelayTransport("127.0.0.1", 1)
        with pytest.raises(TransportError):
            await transport.send(ChannelHandle("lobby"), {"action": "stop"})

    asyncio.run(scenario())


def test_relay_rate_limit_reaches_the_session():
    async def scenario():
        relay = await start_relay(max_messages=1, window_seconds=5.0)
        s = Session(RelayTransport("127.0.0.1", relay.port), "lobby", "t")
        assert await s.connect()
        # The handshakeRequest used up the only slot in the window.
        await wait_until(lambda: s.connected)
        await s.transmit({"x": 1}, s.identity.public_key)
        await wait_until(lambda: s.lifecycle.status is ConnectionStatus.RATE_LIMITED)
        assert 1 <= s.lifecycle.cooldown <= 5
        assert s.lifecycle.locked
        await s.close()
        await relay.stop()

    asyncio.run(scenario())


def test_throttled_sends_are_queued_not_lost():
    async def scenario():
        relay = await start_relay(max_messages=1, window_seconds=0.5)
        a = Session(RelayTransport("127.0.0.1", relay.port), "lobby", "t")
        b = Session(RelayTransport("127.0.0.1", relay.port), "lobby", "t")
        assert await a.connect()
        await wait_until(lambda: a.connected)
        assert await b.connect()

        # a's handshakeAnswer lands in the same window as its handshakeRequest.
        await wait_until(lambda: a.lifecycle.status is ConnectionStatus.RATE_LIMITED)
        await wait_until(lambda: a.user_id in b.registry and b.user_id in a.registry, timeout=3.0)

        for n in range(3):
            await a.transmit({"n": n}, b.identity.public_key)
        got = [await asyncio.wait_for(b.inbox.get(), 3.0) for _ in range(3)]
        assert [d.payload for d in got] == [{"n": 0}, {"n": 1}, {"n": 2}]
        assert b.stats["dropped_unknown_sender"] == 0

        await a.close()
        await b.close()
        await relay.stop()

    asyncio.run(scenario())


def test_framing_round_trip_and_limits():
    async def scenario():
        reader = asyncio.StreamReader()
        frame = {"type": "MESSAGE", "content": "héllo"}
        payload = json.dumps(frame, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        reader.feed_data(LENGTH_STRUCT.pack(len(payload)) + payload)
        assert await read_frame(reader) == frame

        reader = asyncio.StreamReader()
        reader.feed_data(LENGTH_STRUCT.pack(MAX_FRAME_SIZE + 1))
        with pytest.raises(ValueError):
            await read_frame(reader)

        reader = asyncio.StreamReader()
        reader.feed_data(LENGTH_STRUCT.pack(3) + b"[1]")
        with pytest.raises(ValueError):
            await read_frame(reader)

    asyncio.run(scenario())


def test_session_from_config_uses_relay_transport():
    config = Config(token="t", channel_id="lobby", relay="10.0.0.5:9100", login_failure_cooldown=7)
    s = Session.from_config(config)
    assert isinstance(s.transport, RelayTransport)
    assert (s.transport.host, s.transport.port) == ("10.0.0.5", 9100)
    assert s.lifecycle.login_failure_cooldown == 7
