from attendance.resolver import GUEST_KEY_PREFIX, normalize_email, resolve_participants
from helpers import at, event


def test_empty_input_yields_no_participants():
    assert resolve_participants([]) == []


def test_email_is_normalized_and_merged():
    events = [
        event("  Alice@Example.com ", 10, 20, "a1"),
        event("alice@example.com", 0, 5, "a2"),
    ]
    resolved = resolve_participants(events)
    assert len(resolved) == 1
    alice = resolved[0]
    assert alice.identity_key == "alice@example.com"
    assert alice.email == "alice@example.com"
    assert not alice.is_guest
    # sorted by join time
    assert [s.join_time for s in alice.segments] == [at(0), at(10)]


def test_guests_are_never_merged():
    events = [
        event(None, 0, 10, "g1", name="Guest"),
        event(None, 0, 10, "g2", name="Guest"),
        event("", 0, 10, "g3"),
        event("bob@example.com", 0, 10, "b1"),
    ]
    resolved = resolve_participants(events)
    keys = [p.identity_key for p in resolved]
    assert keys == [f"{GUEST_KEY_PREFIX}g1", f"{GUEST_KEY_PREFIX}g2", f"{GUEST_KEY_PREFIX}g3", "bob@example.com"]
    assert all(p.is_guest for p in resolved[:3])


def test_normalize_email_blank_is_none():
    assert normalize_email("   ") is None
    assert normalize_email(None) is None
    assert normalize_email(" X@Y.Z ") == "x@y.z"
