from typing import Dict, List, Optional

"""
registry.py — who we've exchanged keys with, and who the master is.

Two very different write rules live here:
- PeerKeyRegistry is append-only per user id. The first key we hear for a
  user sticks for the whole session; a later key for the same id is ignored.
- MasterKey is last-writer-wins. Any setMasterKey replaces it, with no check
  on who sent it. That is a known weak spot, kept on purpose.
"""


class PeerKeyRegistry:
    """In-memory map: user_id -> 32-byte public key (first write wins)."""
    def __init__(self) -> None:
        self._keys: Dict[str, bytes] = {}

    def add_if_absent(self, user_id: str, public_key: bytes) -> bool:
        """
        Store the key unless we already have one for this user.
        Returns True only when a new entry was created.

        Check and insert happen with no await in between, so a single event
        handler can't race another one into a duplicate answer.
        """
        if user_id in self._keys:
            return False
        self._keys[user_id] = public_key
        return True

    def get(self, user_id: str) -> Optional[bytes]:
        return self._keys.get(user_id)

    def user_ids(self) -> List[str]:
        return list(self._keys)

    def snapshot(self) -> Dict[str, bytes]:
        # Shallow copy so callers get a consistent view.
        return dict(self._keys)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)


class MasterKey:
    """The current default recipient for transmit(). Last announcement wins."""
    def __init__(self) -> None:
        self._public_key: Optional[bytes] = None
        self.announced_by: Optional[str] = None

    def set(self, public_key: bytes, announced_by: Optional[str] = None) -> None:
        self._public_key = public_key
        self.announced_by = announced_by

    def get(self) -> Optional[bytes]:
        return self._public_key

    @property
    def is_set(self) -> bool:
        return self._public_key is not None
