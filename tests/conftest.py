import asyncio

import pytest

from whisperbus.session import Session


async def connected_peer(bus, channel="lobby", token="token", **kwargs):
    """A Session on `bus` that has finished connecting (and handshaking)."""
    session = Session(bus.transport(), channel, token, **kwargs)
    assert await session.connect()
    await bus.settle()
    return session


async def wait_until(predicate, timeout=2.0, interval=0.01):
    """Poll until predicate() is truthy; fail the test on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)
