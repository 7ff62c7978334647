import base64

import pytest
from nacl.public import PrivateKey

from whisperbus import crypto
from whisperbus.errors import DecryptionError
from whisperbus.identity import create_identity


def _pair():
    a, b = create_identity(), create_identity()
    k_ab = crypto.derive_shared_key(a.secret_key, b.public_key)
    k_ba = crypto.derive_shared_key(b.secret_key, a.public_key)
    return a, b, k_ab, k_ba


def test_shared_key_is_symmetric():
    _, _, k_ab, k_ba = _pair()
    assert k_ab == k_ba
    assert len(k_ab) == 32


@pytest.mark.parametrize("payload", [
    {"test": True},
    [1, 2, 3],
    "héllo wörld",
    None,
    {"nested": {"list": [1, "two", 3.5], "empty": {}}},
])
def test_round_trip_between_peers(payload):
    _, _, k_ab, k_ba = _pair()
    assert crypto.decrypt(k_ba, crypto.encrypt(k_ab, payload)) == payload


def test_fresh_nonce_per_call():
    _, _, key, _ = _pair()
    first = crypto.encrypt(key, {"test": True})
    second = crypto.encrypt(key, {"test": True})
    assert first != second
    assert base64.b64decode(first)[:24] != base64.b64decode(second)[:24]
    assert crypto.decrypt(key, first) == crypto.decrypt(key, second) == {"test": True}


def test_wire_layout_is_nonce_then_ciphertext_with_tag():
    _, _, key, _ = _pair()
    payload = {"a": 1}
    plaintext_len = len(b'{"a":1}')
    blob = base64.b64decode(crypto.encrypt(key, payload))
    assert len(blob) == crypto.NONCE_SIZE + plaintext_len + crypto.TAG_SIZE


def test_any_single_byte_tamper_fails():
    _, _, key, _ = _pair()
    blob = bytearray(base64.b64decode(crypto.encrypt(key, {"amount": 10})))
    for i in range(len(blob)):
        tampered = bytearray(blob)
        tampered[i] ^= 0x01
        with pytest.raises(DecryptionError):
            crypto.decrypt(key, base64.b64encode(bytes(tampered)).decode())


def test_wrong_key_fails():
    a, b, k_ab, _ = _pair()
    c = create_identity()
    k_cb = crypto.derive_shared_key(c.secret_key, b.public_key)
    with pytest.raises(DecryptionError):
        crypto.decrypt(k_cb, crypto.encrypt(k_ab, "secret"))


@pytest.mark.parametrize("bad", ["", "!!!not base64!!!", base64.b64encode(b"x" * 30).decode(), 42])
def test_malformed_input_fails(bad):
    _, _, key, _ = _pair()
    with pytest.raises(DecryptionError):
        crypto.decrypt(key, bad)


def test_non_json_plaintext_fails():
    from nacl.secret import SecretBox
    _, _, key, _ = _pair()
    sealed = SecretBox(key).encrypt(b"\xff\xfe not json")
    with pytest.raises(DecryptionError):
        crypto.decrypt(key, base64.b64encode(bytes(sealed)).decode())


def test_one_shot_path_interoperates_with_shared_key_path():
    a, b, k_ab, k_ba = _pair()
    sealed = crypto.encrypt(a.secret_key, {"x": 1}, peer_public_key=b.public_key)
    assert crypto.decrypt(k_ba, sealed) == {"x": 1}
    sealed = crypto.encrypt(k_ba, {"y": 2})
    assert crypto.decrypt(a.secret_key, sealed, peer_public_key=b.public_key) == {"y": 2}


def test_shared_key_matches_nacl_box():
    a, b, k_ab, _ = _pair()
    from nacl.public import Box, PublicKey
    assert Box(PrivateKey(a.secret_key), PublicKey(b.public_key)).shared_key() == k_ab


def test_shared_key_cache_keys_on_both_public_keys():
    a, b, k_ab, _ = _pair()
    c = create_identity()
    cache = crypto.SharedKeyCache()
    assert cache.get(a, b.public_key) == k_ab
    assert cache.get(a, b.public_key) is cache.get(a, b.public_key)
    assert len(cache) == 1
    cache.get(c, b.public_key)
    assert len(cache) == 2
    cache.clear()
    assert len(cache) == 0


def test_decode_public_key():
    a = create_identity()
    assert crypto.decode_public_key(a.public_key_b64) == a.public_key
    for bad in (None, 123, "zz", base64.b64encode(b"short").decode()):
        with pytest.raises(ValueError):
            crypto.decode_public_key(bad)
