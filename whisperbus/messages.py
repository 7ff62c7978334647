import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ProtocolParseError

"""
messages.py — the envelope everyone writes onto the shared channel.

What this module does:
- Defines the closed set of actions (plus an explicit UNKNOWN variant that
  remembers the raw string) so dispatch never falls through a default case.
- Builds envelopes and turns them into the exact wire JSON:
      {"action": str, "fromUserId": str, "toUserId": str|null, "data": any}
- Parses incoming text back into an Envelope, rejecting anything that isn't
  shaped like one.
- Provides the receiver-side addressing filter. The transport delivers every
  message to everyone; dropping what isn't ours is our job.
"""


class Action(str, Enum):
    HANDSHAKE_REQUEST = "handshakeRequest"
    HANDSHAKE_ANSWER = "handshakeAnswer"
    SET_MASTER_KEY = "setMasterKey"
    TRANSMIT = "transmit"
    STOP = "stop"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, raw: str) -> "Action":
        """Map a wire string to an Action; anything unrecognised is UNKNOWN."""
        for action in cls:
            if action is not cls.UNKNOWN and action.value == raw:
                return action
        return cls.UNKNOWN


@dataclass(frozen=True)
class Envelope:
    action: Action
    from_user_id: str
    to_user_id: Optional[str] = None   # None = broadcast
    data: Any = None
    raw_action: str = ""               # what was actually on the wire

    @property
    def is_broadcast(self) -> bool:
        return self.to_user_id is None

    def to_wire(self) -> Dict[str, Any]:
        """Dict with the exact field names peers expect."""
        return {
            "action": self.raw_action or self.action.value,
            "fromUserId": self.from_user_id,
            "toUserId": self.to_user_id,
            "data": self.data,
        }

    def to_json(self) -> str:
        """Compact UTF-8 JSON text, ready for Transport.send()."""
        return json.dumps(self.to_wire(), separators=(",", ":"), ensure_ascii=False)


def new_envelope(
    action: Action,
    from_user_id: str,
    data: Any = None,
    to_user_id: Optional[str] = None,
) -> Envelope:
    """
    Create an outgoing envelope.

    Args:
        action:       one of the Action members (not UNKNOWN).
        from_user_id: our own user id.
        data:         action-specific body (public key dict, ciphertext, ...).
        to_user_id:   recipient for unicast-by-convention; None broadcasts.
    """
    if action is Action.UNKNOWN:
        raise ValueError("cannot send an envelope with an unknown action")
    return Envelope(action=action, from_user_id=from_user_id, to_user_id=to_user_id,
                    data=data, raw_action=action.value)


def public_key_body(public_key_b64: str) -> Dict[str, str]:
    """Body shared by handshakeRequest, handshakeAnswer, setMasterKey and stop."""
    return {"publicKey": public_key_b64}


def parse_envelope(text: str) -> Envelope:
    """
    Parse one bus message into an Envelope.

    Raises:
        ProtocolParseError: not JSON, not an object, or the addressing fields
        are missing / the wrong type.
    """
    try:
        obj = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolParseError(f"not JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise ProtocolParseError("envelope must be a JSON object")

    raw_action = obj.get("action")
    from_user_id = obj.get("fromUserId")
    to_user_id = obj.get("toUserId")

    if not isinstance(raw_action, str):
        raise ProtocolParseError("envelope.action must be a string")
    if not isinstance(from_user_id, str) or not from_user_id:
        raise ProtocolParseError("envelope.fromUserId must be a non-empty string")
    if to_user_id is not None and not isinstance(to_user_id, str):
        raise ProtocolParseError("envelope.toUserId must be a string or null")

    return Envelope(
        action=Action.from_wire(raw_action),
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        data=obj.get("data"),
        raw_action=raw_action,
    )


def is_addressed_to(env: Envelope, user_id: str) -> bool:
    """
    Universal filter applied before any action handling.

    False for our own echoes and for unicasts meant for somebody else.
    """
    if env.from_user_id == user_id:
        return False
    if env.to_user_id is not None and env.to_user_id != user_id:
        return False
    return True
