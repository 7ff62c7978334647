import logging
import math
from enum import Enum
from typing import Optional

from .errors import StateError
from .transport import ChannelHandle

"""
lifecycle.py — when we're allowed to connect, and how long we back off.

States:
    DISCONNECTED -> CONNECTING (locked) -> CONNECTED
                        |
                        +-> RATE_LIMITED(cooldown)  -- ticks --> DISCONNECTED

- `locked` blocks duplicate connect attempts. It goes up on begin_connect()
  and comes down when a cooldown runs out with no channel held, or when the
  channel is lost.
- Cooldown is whole seconds: ceil(timeout_ms / 1000). One tick() per second.
- A failed login backs off the same way, with a fixed cooldown (120s default),
  since we can't tell a bad token from a throttled one.
"""

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_FAILURE_COOLDOWN = 120


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RATE_LIMITED = "rate_limited"


class ConnectionLifecycle:
    def __init__(self, login_failure_cooldown: int = DEFAULT_LOGIN_FAILURE_COOLDOWN) -> None:
        self.login_failure_cooldown = login_failure_cooldown
        self.status = ConnectionStatus.DISCONNECTED
        self.locked = False
        self.cooldown = 0
        self.channel: Optional[ChannelHandle] = None

    @property
    def connected(self) -> bool:
        return self.channel is not None

    def can_connect(self, has_identity: bool, has_transport: bool, channel_id: Optional[str]) -> bool:
        """All prerequisites present and nobody else is mid-connect."""
        return bool(has_identity and has_transport and channel_id) and not self.locked

    def begin_connect(self) -> None:
        if self.locked:
            raise StateError(f"connect already in progress or cooling down ({self.describe()})")
        self.locked = True
        self.status = ConnectionStatus.CONNECTING

    def on_connected(self, channel: ChannelHandle) -> None:
        self.channel = channel
        if self.status is not ConnectionStatus.RATE_LIMITED:
            self.status = ConnectionStatus.CONNECTED

    def on_rate_limit(self, timeout_ms: float) -> None:
        """Enter (or restart) cooldown for ceil(timeout_ms / 1000) seconds."""
        self.cooldown = max(0, math.ceil(timeout_ms / 1000))
        self.locked = True
        self.status = ConnectionStatus.RATE_LIMITED
        logger.warning("Rate limited, retry after %ss", self.cooldown)

    def on_login_failure(self) -> None:
        """Cause unknown, so treat it like a rate limit with a fixed cooldown."""
        self.on_rate_limit(self.login_failure_cooldown * 1000)

    def on_disconnected(self) -> None:
        self.channel = None
        if self.status is not ConnectionStatus.RATE_LIMITED:
            self.status = ConnectionStatus.DISCONNECTED
            self.locked = False

    def tick(self) -> bool:
        """
        One second passed. Returns True on the tick that releases the lock.

        While connected, expiry just drops back to CONNECTED; otherwise we
        land in DISCONNECTED and may try again.
        """
        if self.status is not ConnectionStatus.RATE_LIMITED:
            return False
        if self.cooldown > 0:
            self.cooldown -= 1
        if self.cooldown > 0:
            return False

        if self.channel is not None:
            self.status = ConnectionStatus.CONNECTED
        else:
            self.status = ConnectionStatus.DISCONNECTED
            self.locked = False
        logger.info("Cooldown finished, status is now %s", self.status.value)
        return True

    def describe(self) -> str:
        """Same wording as the status line in the peer CLI."""
        if self.status is ConnectionStatus.RATE_LIMITED:
            return f"retry after {self.cooldown}"
        if self.channel is not None:
            return "connected"
        if self.status is ConnectionStatus.CONNECTING:
            return "connecting"
        return "not connected"
