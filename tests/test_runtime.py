from fleet.runtime import LaunchSpec, Registry


def test_put_get_keys_entries():
    reg = Registry()
    a, b = object(), object()
    reg.put("A", a)
    reg.put("B", b)

    assert reg.get("A") is a
    assert reg.get("missing") is None
    assert reg.keys() == {"A", "B"}
    assert sorted(reg.entries(), key=lambda e: e[0]) == [("A", a), ("B", b)]
    assert "A" in reg and len(reg) == 2


def test_remove_is_idempotent():
    reg = Registry()
    h = object()
    reg.put("A", h)

    assert reg.remove("A") is h
    assert reg.remove("A") is None
    assert len(reg) == 0


def test_remove_with_stale_handle_keeps_replacement():
    reg = Registry()
    old, new = object(), object()
    reg.put("A", new)

    assert reg.remove("A", expected=old) is None
    assert reg.get("A") is new
    assert reg.remove("A", expected=new) is new


def test_entries_is_a_snapshot():
    reg = Registry()
    for i in "ABC":
        reg.put(i, object())
    for identity, _ in reg.entries():
        reg.remove(identity)
    assert len(reg) == 0


def test_launch_spec_short_id():
    assert LaunchSpec("agent-123456", "c").short_id == "agent-"
    assert LaunchSpec("ab", "c").short_id == "ab"
