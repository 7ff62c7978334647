import secrets
from dataclasses import dataclass, field

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .crypto import b64encode

"""
identity.py — the per-process identity (key pair + throwaway user id).

Nothing here is ever written to disk: a restart means a brand-new identity.
Only `public_key` goes on the wire; `secret_key` stays in this object.
"""

USER_ID_MIN = 1_000_000
USER_ID_SPAN = 1_000_000  # suffix lands in [1_000_000, 2_000_000)


@dataclass(frozen=True)
class Identity:
    public_key: bytes
    secret_key: bytes = field(repr=False)
    user_id: str

    @property
    def public_key_b64(self) -> str:
        """The public key as it appears in `data.publicKey` on the wire."""
        return b64encode(self.public_key)


def random_user_id() -> str:
    """Human-readable id like 'User-1534872'. Not guaranteed unique."""
    return f"User-{USER_ID_MIN + secrets.randbelow(USER_ID_SPAN)}"


def create_identity() -> Identity:
    """Generate a fresh X25519 key pair and a random user id."""
    priv = X25519PrivateKey.generate()
    secret_key = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_key = priv.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return Identity(public_key=public_key, secret_key=secret_key, user_id=random_user_id())
