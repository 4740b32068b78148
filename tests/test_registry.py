import threading

import pytest


def test_register_places_session_in_default_room(relay, connect, invariants) -> None:
    t = connect()
    sess = relay.session_manager.lookup(t.conn_id)
    assert sess is not None
    assert sess.username == "unnamed"
    assert sess.room == "lobby"
    assert sess.peer_address == t.peer_address
    assert relay.room_manager.get_room_members("lobby") == {t.conn_id}
    invariants()


def test_register_rejects_duplicate_id(relay, connect) -> None:
    t = connect()
    with pytest.raises(ValueError):
        relay.session_manager.register(t.conn_id, t)


def test_move_room_creates_and_deletes_rooms(relay, connect, invariants) -> None:
    sm, rm = relay.session_manager, relay.room_manager
    t = connect()

    assert sm.move_room(t.conn_id, "lobby", "dev")
    assert rm.has_room("dev")
    assert sm.lookup(t.conn_id).room == "dev"
    # The default room survives with no members.
    assert rm.has_room("lobby")
    assert rm.get_room_members("lobby") == set()
    invariants()

    assert sm.move_room(t.conn_id, "dev", "ops")
    assert not rm.has_room("dev")
    invariants()


def test_move_room_from_wrong_room_changes_nothing(relay, connect, invariants) -> None:
    t = connect()
    assert not relay.session_manager.move_room(t.conn_id, "dev", "ops")
    assert not relay.session_manager.move_room("missing", "lobby", "ops")
    assert not relay.room_manager.has_room("ops")
    assert relay.session_manager.lookup(t.conn_id).room == "lobby"
    invariants()


def test_remove_is_idempotent(relay, connect, invariants) -> None:
    sm = relay.session_manager
    t = connect()
    sm.move_room(t.conn_id, "lobby", "dev")

    removed = sm.remove(t.conn_id)
    assert removed is not None and removed.room == "dev"
    assert sm.remove(t.conn_id) is None
    assert sm.lookup(t.conn_id) is None
    assert not relay.room_manager.has_room("dev")
    invariants()


def test_mutate_missing_session_returns_none(relay, connect) -> None:
    t = connect()
    assert relay.session_manager.mutate(t.conn_id, lambda s: s.room) == "lobby"
    assert relay.session_manager.mutate("missing", lambda s: s.room) is None


def test_assign_username_only_once(relay, connect) -> None:
    sm = relay.session_manager
    t = connect()
    assert not sm.assign_username(t.conn_id, "unnamed")
    assert sm.assign_username(t.conn_id, "alice")
    assert not sm.assign_username(t.conn_id, "mallory")
    assert sm.lookup(t.conn_id).username == "alice"


def test_find_by_username_prefers_earliest_and_forgets_removed(relay, connect) -> None:
    sm = relay.session_manager
    first = connect("alice")
    second = connect("alice")
    assert sm.find_by_username("alice") == first.conn_id

    sm.remove(first.conn_id)
    assert sm.find_by_username("alice") == second.conn_id
    sm.remove(second.conn_id)
    assert sm.find_by_username("alice") is None
    assert sm.get_stats()["indexed_by_name"] == 0


def test_members_of_is_in_join_order(relay, connect) -> None:
    ids = [connect(name).conn_id for name in ("carol", "alice", "bob")]
    assert [s.id for s in relay.session_manager.members_of("lobby")] == ids


def test_touch_never_moves_heartbeat_backwards(relay, connect, clock) -> None:
    sm = relay.session_manager
    t = connect()
    clock.advance(10)
    sm.touch(t.conn_id)
    assert sm.lookup(t.conn_id).last_heartbeat == clock.now

    clock.advance(-5)
    sm.touch(t.conn_id)
    assert sm.lookup(t.conn_id).last_heartbeat == clock.now + 5


def test_rate_limit_token_bucket(relay, connect, clock) -> None:
    sm = relay.session_manager
    t = connect()
    budget = relay.config.rate_limit_msgs_per_minute
    assert all(sm.refill_and_take(t.conn_id) for _ in range(budget))
    assert not sm.refill_and_take(t.conn_id)

    clock.advance(1.0)
    # One second refills budget / 60 tokens.
    assert sm.refill_and_take(t.conn_id)


def test_concurrent_moves_keep_index_consistent(relay, connect, invariants) -> None:
    sm = relay.session_manager
    transports = [connect() for _ in range(8)]
    rooms = ["lobby", "a", "b", "c"]
    errors: list[BaseException] = []

    def worker(conn_id: str, offset: int) -> None:
        try:
            for i in range(200):
                cur = sm.lookup(conn_id).room
                sm.move_room(conn_id, cur, rooms[(i + offset) % len(rooms)])
        except BaseException as e:  # noqa: BLE001
            errors.append(e)

    threads = [
        threading.Thread(target=worker, args=(t.conn_id, n)) for n, t in enumerate(transports)
    ]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    assert not errors
    invariants()
    total = sum(n for _, n in relay.room_manager.room_counts())
    assert total == len(transports)


def test_session_identity_fields_are_fixed(relay, connect) -> None:
    t = connect("Alice")
    sess = relay.session_manager.lookup(t.conn_id)
    for name, value in (("id", "other"), ("peer_address", "203.0.113.9"), ("join_time", 0.0)):
        with pytest.raises(AttributeError):
            setattr(sess, name, value)
    assert sess.id == t.conn_id
    assert sess.peer_address == t.peer_address

    sess.last_heartbeat = 5.0
    assert sess.last_heartbeat == 5.0
