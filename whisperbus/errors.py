"""
errors.py — the small exception family used across whisperbus.

How these are meant to be used:
- TransportError: login/fetch/send trouble. Recovered through backoff, never
  fatal to the process.
- ProtocolParseError: a bus message that isn't a usable envelope. Dropped and
  counted.
- DecryptionError: bad tag, truncated blob, junk base64. Dropped, sender is
  never told.
- StateError: a local call made without its prerequisites (no channel, no
  recipient, already connecting). Rejected before anything hits the wire.
- ConfigError: token or channel missing. Keeps us out of CONNECTING.
"""


class WhisperBusError(Exception):
    """Base class so callers can catch everything from this package at once."""


class TransportError(WhisperBusError):
    """The broadcast transport failed to log in, fetch a channel, or send."""


class LoginError(TransportError):
    """Credentials were refused (or the login failed for any other reason)."""


class ChannelNotFoundError(TransportError):
    """The requested channel id does not exist on the transport."""


class ProtocolParseError(WhisperBusError):
    """Incoming text is not valid envelope JSON."""


class DecryptionError(WhisperBusError):
    """Authenticated decryption failed or the ciphertext was malformed."""


class StateError(WhisperBusError):
    """An operation was attempted before its prerequisites were in place."""


class ConfigError(WhisperBusError):
    """Required configuration (token, channel id) is missing."""
