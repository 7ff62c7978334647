import pytest

from whisperbus.errors import StateError
from whisperbus.lifecycle import ConnectionLifecycle, ConnectionStatus
from whisperbus.transport import ChannelHandle


def test_rate_limit_5000ms_releases_exactly_on_fifth_tick():
    lc = ConnectionLifecycle()
    lc.begin_connect()
    lc.on_rate_limit(5000)
    assert lc.locked and lc.cooldown == 5
    for _ in range(4):
        assert not lc.tick()
        assert lc.locked
        assert lc.status is ConnectionStatus.RATE_LIMITED
    assert lc.tick()
    assert not lc.locked
    assert lc.status is ConnectionStatus.DISCONNECTED


@pytest.mark.parametrize("timeout_ms,expected", [(4500, 5), (4001, 5), (1, 1), (1000, 1), (0, 0)])
def test_cooldown_uses_ceiling(timeout_ms, expected):
    lc = ConnectionLifecycle()
    lc.on_rate_limit(timeout_ms)
    assert lc.cooldown == expected


def test_zero_cooldown_releases_on_next_tick():
    lc = ConnectionLifecycle()
    lc.on_rate_limit(0)
    assert lc.locked
    assert lc.tick()
    assert not lc.locked


def test_login_failure_uses_fixed_cooldown():
    lc = ConnectionLifecycle()
    lc.begin_connect()
    lc.on_login_failure()
    assert lc.cooldown == 120
    assert lc.locked
    assert lc.describe() == "retry after 120"


def test_custom_login_failure_cooldown():
    lc = ConnectionLifecycle(login_failure_cooldown=3)
    lc.on_login_failure()
    assert lc.cooldown == 3


def test_prerequisites_and_lock_gate_connect():
    lc = ConnectionLifecycle()
    assert lc.can_connect(True, True, "lobby")
    assert not lc.can_connect(False, True, "lobby")
    assert not lc.can_connect(True, False, "lobby")
    assert not lc.can_connect(True, True, None)
    assert not lc.can_connect(True, True, "")
    lc.begin_connect()
    assert lc.status is ConnectionStatus.CONNECTING
    assert lc.describe() == "connecting"
    assert not lc.can_connect(True, True, "lobby")
    with pytest.raises(StateError):
        lc.begin_connect()


def test_rate_limit_while_connected_keeps_channel():
    lc = ConnectionLifecycle()
    lc.begin_connect()
    lc.on_connected(ChannelHandle("lobby"))
    assert lc.status is ConnectionStatus.CONNECTED
    assert lc.describe() == "connected"
    lc.on_rate_limit(2000)
    assert lc.tick() is False
    assert lc.tick() is True
    assert lc.status is ConnectionStatus.CONNECTED
    assert lc.channel == ChannelHandle("lobby")
    # Still holding the channel, so no second connect.
    assert lc.locked


def test_tick_outside_cooldown_is_a_no_op():
    lc = ConnectionLifecycle()
    assert lc.tick() is False
    assert lc.status is ConnectionStatus.DISCONNECTED


def test_disconnect_clears_lock():
    lc = ConnectionLifecycle()
    lc.begin_connect()
    lc.on_connected(ChannelHandle("lobby"))
    lc.on_disconnected()
    assert not lc.locked
    assert lc.channel is None
    assert lc.describe() == "not connected"
