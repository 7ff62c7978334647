from whisperbus.registry import MasterKey, PeerKeyRegistry


def test_first_write_wins():
    reg = PeerKeyRegistry()
    assert reg.add_if_absent("User-1", b"a" * 32)
    assert not reg.add_if_absent("User-1", b"b" * 32)
    assert reg.get("User-1") == b"a" * 32
    assert len(reg) == 1
    assert "User-1" in reg
    assert "User-2" not in reg


def test_snapshot_is_a_copy():
    reg = PeerKeyRegistry()
    reg.add_if_absent("User-1", b"a" * 32)
    snap = reg.snapshot()
    snap["User-2"] = b"b" * 32
    assert reg.user_ids() == ["User-1"]


def test_master_key_last_write_wins():
    master = MasterKey()
    assert not master.is_set
    master.set(b"x" * 32, announced_by="User-X")
    master.set(b"y" * 32, announced_by="User-Y")
    assert master.get() == b"y" * 32
    assert master.announced_by == "User-Y"
