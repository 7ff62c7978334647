"""
crypto.py — key agreement and authenticated encryption helpers.

Why this exists:
- Keep all the NaCl bits in one place so the session code can call
  `encrypt/decrypt/derive_shared_key` without caring about nonces or layout.
- Use plain Base64 (with '=' padding) because that's what the browser peers
  on the same channel speak (tweetnacl-util).
- One box construction everywhere: X25519 key agreement + XSalsa20-Poly1305.

Wire form of an encrypted payload:
    base64( nonce (24 bytes) || ciphertext (len(plaintext) + 16 bytes) )
"""

import base64
import binascii
import json
from typing import Any, Dict, Optional, Tuple

from nacl import bindings
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.secret import SecretBox
from nacl.utils import random as nacl_random

from .errors import DecryptionError

NONCE_SIZE = Box.NONCE_SIZE          # 24
KEY_SIZE = bindings.crypto_box_PUBLICKEYBYTES  # 32
TAG_SIZE = SecretBox.MACBYTES        # 16


# -----------------------------
# Base64 helpers (standard, padded)
# -----------------------------

def b64encode(data: bytes) -> str:
    """Standard Base64 with padding, as text."""
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    """Strict decode; raises binascii.Error / ValueError on junk input."""
    return base64.b64decode(data.encode("ascii"), validate=True)


def decode_public_key(value: Any) -> bytes:
    """
    Turn a `data.publicKey` field from the wire into 32 raw key bytes.

    Raises ValueError if it isn't a Base64 string of exactly 32 bytes, so
    callers can drop the envelope instead of storing garbage.
    """
    if not isinstance(value, str):
        raise ValueError("publicKey must be a base64 string")
    try:
        raw = b64decode(value)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"publicKey is not valid base64: {exc}") from exc
    if len(raw) != KEY_SIZE:
        raise ValueError(f"publicKey must be {KEY_SIZE} bytes, got {len(raw)}")
    return raw


def short_key(public_key: bytes) -> str:
    """First few Base64 chars of a public key. Handy for log lines."""
    return b64encode(public_key)[:10]


# -------------
# Key agreement
# -------------

def derive_shared_key(secret_key: bytes, peer_public_key: bytes) -> bytes:
    """
    X25519 between our secret and the peer's public key, run through
    HSalsa20 (NaCl's `crypto_box_beforenm`). Both sides get the same 32 bytes.
    """
    return bindings.crypto_box_beforenm(peer_public_key, secret_key)


class SharedKeyCache:
    """
    In-memory memo of derived shared keys, keyed on
    (local public key, peer public key). Lives and dies with the process.
    """
    def __init__(self) -> None:
        self._keys: Dict[Tuple[bytes, bytes], bytes] = {}

    def get(self, identity, peer_public_key: bytes) -> bytes:
        cache_key = (identity.public_key, peer_public_key)
        shared = self._keys.get(cache_key)
        if shared is None:
            shared = derive_shared_key(identity.secret_key, peer_public_key)
            self._keys[cache_key] = shared
        return shared

    def clear(self) -> None:
        self._keys.clear()

    def __len__(self) -> int:
        return len(self._keys)


# ---------------------------
# Encryption & Decryption API
# ---------------------------

def _box_for(key: bytes, peer_public_key: Optional[bytes]):
    # With a peer key, `key` is our secret key; otherwise it's already shared.
    if peer_public_key is not None:
        return Box(PrivateKey(key), PublicKey(peer_public_key))
    return SecretBox(key)


def encrypt(key: bytes, payload: Any, peer_public_key: Optional[bytes] = None) -> str:
    """
    Serialize `payload` to UTF-8 JSON, seal it under a fresh random nonce and
    return Base64(nonce || ciphertext).

    Args:
        key: a precomputed shared key, or our secret key when
             `peer_public_key` is given.
        payload: anything `json.dumps` accepts.
        peer_public_key: optional recipient key for the one-shot path.

    A new nonce is drawn on every call; never pass one in.
    """
    plaintext = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    nonce = nacl_random(NONCE_SIZE)
    sealed = _box_for(key, peer_public_key).encrypt(plaintext, nonce)
    # EncryptedMessage is already nonce || ciphertext.
    return b64encode(bytes(sealed))


def decrypt(key: bytes, message: str, peer_public_key: Optional[bytes] = None) -> Any:
    """
    Reverse of encrypt(). Fails closed: any problem raises DecryptionError and
    no partial plaintext ever comes back.
    """
    if not isinstance(message, str):
        raise DecryptionError("ciphertext must be a base64 string")
    try:
        blob = b64decode(message)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"ciphertext is not valid base64: {exc}") from exc

    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("ciphertext is truncated")

    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        plaintext = _box_for(key, peer_public_key).decrypt(ciphertext, nonce)
    except CryptoError as exc:
        raise DecryptionError("could not decrypt message") from exc

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionError(f"decrypted payload is not JSON: {exc}") from exc
