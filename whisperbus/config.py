import logging
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

from .errors import ConfigError
from .lifecycle import DEFAULT_LOGIN_FAILURE_COOLDOWN

"""
config.py — settings for a peer, read from the environment.

Variables:
    WHISPERBUS_TOKEN            login token for the broadcast transport
    WHISPERBUS_CHANNEL          channel id every peer joins
    WHISPERBUS_RELAY            relay address as host:port (default 127.0.0.1:9000)
    WHISPERBUS_LOGIN_COOLDOWN   seconds to back off after a failed login (120)
    WHISPERBUS_LOG_LEVEL        logging level name (INFO)

CLI flags in run_node.py override whatever is set here.
"""

DEFAULT_RELAY = "127.0.0.1:9000"


def parse_address(value: str) -> Tuple[str, int]:
    """'host:port' -> (host, port). Raises ConfigError on anything else."""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"expected host:port, got {value!r}")
    return host, int(port)


@dataclass
class Config:
    token: Optional[str] = None
    channel_id: Optional[str] = None
    relay: str = DEFAULT_RELAY
    login_failure_cooldown: int = DEFAULT_LOGIN_FAILURE_COOLDOWN
    log_level: str = "INFO"
    auto_reconnect: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if environ is None else environ
        cooldown = env.get("WHISPERBUS_LOGIN_COOLDOWN")
        try:
            login_failure_cooldown = int(cooldown) if cooldown else DEFAULT_LOGIN_FAILURE_COOLDOWN
        except ValueError as exc:
            raise ConfigError(f"WHISPERBUS_LOGIN_COOLDOWN must be an integer, got {cooldown!r}") from exc
        return cls(
            token=env.get("WHISPERBUS_TOKEN") or None,
            channel_id=env.get("WHISPERBUS_CHANNEL") or None,
            relay=env.get("WHISPERBUS_RELAY") or DEFAULT_RELAY,
            login_failure_cooldown=login_failure_cooldown,
            log_level=(env.get("WHISPERBUS_LOG_LEVEL") or "INFO").upper(),
        )

    def missing(self) -> List[str]:
        names = []
        if not self.token:
            names.append("token")
        if not self.channel_id:
            names.append("channel_id")
        return names

    def validate(self) -> "Config":
        """Raise ConfigError naming every missing field; returns self for chaining."""
        missing = self.missing()
        if missing:
            raise ConfigError(f"missing configuration: {', '.join(missing)}")
        parse_address(self.relay)
        if self.login_failure_cooldown < 0:
            raise ConfigError("login_failure_cooldown must be >= 0")
        self.check_log_level()
        return self

    def check_log_level(self) -> None:
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigError(f"unknown log level {self.log_level!r}")

    @property
    def relay_address(self) -> Tuple[str, int]:
        return parse_address(self.relay)
