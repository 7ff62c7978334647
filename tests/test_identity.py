from nacl.public import PrivateKey

from whisperbus.crypto import b64decode
from whisperbus.identity import create_identity, random_user_id


def test_keys_are_32_bytes_and_match():
    ident = create_identity()
    assert len(ident.public_key) == 32
    assert len(ident.secret_key) == 32
    assert bytes(PrivateKey(ident.secret_key).public_key) == ident.public_key
    assert b64decode(ident.public_key_b64) == ident.public_key


def test_user_id_format_and_range():
    for _ in range(200):
        user_id = random_user_id()
        prefix, _, number = user_id.partition("-")
        assert prefix == "User"
        assert 1_000_000 <= int(number) < 2_000_000


def test_each_identity_is_fresh():
    a, b = create_identity(), create_identity()
    assert a.public_key != b.public_key
    assert a.secret_key != b.secret_key


def test_repr_does_not_leak_secret_key():
    ident = create_identity()
    text = repr(ident)
    assert "secret_key" not in text
    assert repr(ident.secret_key) not in text
