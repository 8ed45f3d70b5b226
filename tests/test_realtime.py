import pytest

from conftest import FakeConnection
from realtime import RealtimeChannel


@pytest.fixture
def channel():
    return RealtimeChannel()


def attached(channel, connection_id):
    conn = FakeConnection(connection_id)
    channel.attach(conn)
    return conn


def test_publish_reaches_every_connection_in_room(channel):
    phone, laptop = attached(channel, "phone"), attached(channel, "laptop")
    channel.join("phone", 2)
    channel.join("laptop", 2)

    assert channel.publish(2, {"type": "message", "n": 1}) == 2
    assert phone.events == [{"type": "message", "n": 1}]
    assert laptop.events == [{"type": "message", "n": 1}]


def test_publish_only_targets_named_room(channel):
    bob, carol = attached(channel, "bob"), attached(channel, "carol")
    channel.join("bob", 2)
    channel.join("carol", 3)

    channel.publish(2, {"type": "message"})
    assert len(bob.events) == 1
    assert carol.events == []


def test_join_is_idempotent(channel):
    bob = attached(channel, "bob")
    channel.join("bob", 2)
    channel.join("bob", 2)

    assert channel.members(2) == ["bob"]
    assert channel.publish(2, {"type": "message"}) == 1
    assert len(bob.events) == 1


def test_join_requires_attached_connection(channel):
    with pytest.raises(KeyError):
        channel.join("ghost", 2)


def test_publish_to_empty_room_is_silent(channel):
    assert channel.publish(42, {"type": "message"}) == 0


def test_delivery_order_matches_publish_order(channel):
    bob = attached(channel, "bob")
    channel.join("bob", 2)
    for n in range(101, 106):
        channel.publish(2, {"type": "message", "id": n})
    assert [e["id"] for e in bob.events] == [101, 102, 103, 104, 105]


def test_leave_removes_from_all_rooms(channel):
    conn = attached(channel, "c1")
    channel.join("c1", 2)
    channel.join("c1", 5)
    assert channel.rooms_of("c1") == {2, 5}

    channel.leave("c1")
    assert channel.rooms_of("c1") == set()
    assert channel.members(2) == []
    assert channel.publish(5, {"type": "message"}) == 0
    assert conn.events == []


def test_leave_unknown_connection_is_ignored(channel):
    channel.leave("never-seen")


def test_failing_connection_does_not_block_others(channel):
    class Broken(FakeConnection):
        def push(self, event):
            raise RuntimeError("socket gone")

    broken = Broken("broken")
    channel.attach(broken)
    healthy = attached(channel, "healthy")
    channel.join("broken", 2)
    channel.join("healthy", 2)

    assert channel.publish(2, {"type": "message"}) == 1
    assert len(healthy.events) == 1


def test_close_resets_state(channel):
    conn = attached(channel, "c1")
    channel.join("c1", 2)
    channel.close()

    assert conn.closed
    assert channel.members(2) == []
    with pytest.raises(KeyError):
        channel.join("c1", 2)
