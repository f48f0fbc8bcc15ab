from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from explainer_core import ExplainerConfig, SessionBusy, SessionNotFound, SessionPolicyError
from session_store import SessionStore


@pytest.fixture
def store(config, clock) -> SessionStore:
    return SessionStore(config, clock=clock)


def test_create_and_commit_appends_in_order(store):
    session = store.create()
    for index in range(3):
        with store.turn(session.session_id) as turn:
            turn.commit(f"q{index}", f"a{index}")

    history = store.history(session.session_id)
    assert [exchange.sequence_index for exchange in history] == [0, 1, 2]
    assert [exchange.patient_text for exchange in history] == ["q0", "q1", "q2"]


def test_session_ref_is_anonymized(store, config):
    session = store.create(session_id="patient-visit-42")
    assert session.session_ref.startswith("anon_")
    assert "patient-visit-42" not in session.session_ref


def test_second_concurrent_turn_is_rejected(store):
    session = store.create()
    with store.turn(session.session_id):
        with pytest.raises(SessionBusy):
            with store.turn(session.session_id):
                pass


def test_concurrent_threads_never_interleave(store):
    session = store.create()
    entered = threading.Event()
    release = threading.Event()
    outcomes: list[str] = []

    def first_turn() -> None:
        with store.turn(session.session_id) as turn:
            entered.set()
            release.wait(timeout=5)
            turn.commit("first question", "first answer")
            outcomes.append("first")

    def second_turn() -> None:
        try:
            with store.turn(session.session_id) as turn:
                turn.commit("second question", "second answer")
                outcomes.append("second")
        except SessionBusy:
            outcomes.append("busy")

    worker = threading.Thread(target=first_turn)
    worker.start()
    assert entered.wait(timeout=5)
    contender = threading.Thread(target=second_turn)
    contender.start()
    contender.join(timeout=5)
    release.set()
    worker.join(timeout=5)

    assert sorted(outcomes) == ["busy", "first"]
    history = store.history(session.session_id)
    assert [(exchange.patient_text, exchange.system_text) for exchange in history] == [
        ("first question", "first answer")
    ]


def test_bounded_wait_queues_second_turn(clock):
    store = SessionStore(ExplainerConfig(session_busy_wait_seconds=5.0), clock=clock)
    session = store.create()
    entered = threading.Event()

    def first_turn() -> None:
        with store.turn(session.session_id) as turn:
            entered.set()
            turn.commit("first", "one")

    worker = threading.Thread(target=first_turn)
    worker.start()
    assert entered.wait(timeout=5)
    with store.turn(session.session_id) as turn:
        turn.commit("second", "two")
    worker.join(timeout=5)

    assert [exchange.patient_text for exchange in store.history(session.session_id)] == ["first", "second"]


def test_failed_turn_appends_nothing(store):
    session = store.create()
    with pytest.raises(RuntimeError):
        with store.turn(session.session_id):
            raise RuntimeError("generation cancelled")

    assert store.history(session.session_id) == ()
    with store.turn(session.session_id) as turn:
        turn.commit("retry", "ok")
    assert len(store.history(session.session_id)) == 1


def test_turn_history_is_a_snapshot(store):
    session = store.create()
    with store.turn(session.session_id) as turn:
        turn.commit("q", "a")
        assert turn.history == ()
    with pytest.raises(SessionPolicyError):
        turn.commit("again", "twice")


def test_terminate_hard_deletes(store):
    session = store.create()
    with store.turn(session.session_id) as turn:
        turn.commit("q", "a")

    assert store.terminate(session.session_id) is True
    assert session.exchanges == []
    assert session.session_id not in store
    with pytest.raises(SessionNotFound):
        store.history(session.session_id)
    assert store.terminate(session.session_id) is False


def test_terminate_during_turn_blocks_commit(store):
    session = store.create()
    with store.turn(session.session_id) as turn:
        store.terminate(session.session_id)
        with pytest.raises(SessionNotFound):
            turn.commit("late", "answer")


def test_expired_sessions_are_purged(store, clock):
    stale = store.create()
    clock.now += timedelta(seconds=1000)
    fresh = store.create()
    clock.now += timedelta(seconds=900)

    assert store.purge_expired() == 1
    assert stale.session_id not in store
    assert fresh.session_id in store
    with pytest.raises(SessionNotFound):
        store.get(stale.session_id)


def test_activity_extends_session_lifetime(store, clock):
    session = store.create()
    clock.now += timedelta(seconds=1700)
    with store.turn(session.session_id) as turn:
        turn.commit("q", "a")
    clock.now += timedelta(seconds=1700)
    assert store.get(session.session_id) is session


def test_turn_in_flight_survives_purge_near_expiry(store, clock):
    session = store.create()
    clock.now += timedelta(seconds=1790)
    with store.turn(session.session_id) as turn:
        clock.now += timedelta(seconds=20)
        bystander = store.create()
        clock.now += timedelta(seconds=2000)
        assert store.purge_expired() == 1
        assert bystander.session_id not in store
        exchange = turn.commit("slow question", "slow answer")

    assert exchange.sequence_index == 0
    assert session.session_id in store


def test_starting_a_turn_counts_as_activity(store, clock):
    session = store.create()
    clock.now += timedelta(seconds=1700)
    with store.turn(session.session_id):
        pass
    clock.now += timedelta(seconds=1700)

    assert store.get(session.session_id) is session


@pytest.mark.parametrize("session_id", ["x" * 129, "has spaces", "semi;colon", "../etc"])
def test_invalid_session_ids_are_rejected(store, session_id):
    with pytest.raises(SessionPolicyError):
        store.create(session_id=session_id)


def test_duplicate_session_id_is_rejected(store):
    store.create(session_id="visit-1")
    with pytest.raises(SessionPolicyError):
        store.create(session_id="visit-1")


def test_sessions_are_isolated(store):
    first = store.create()
    second = store.create()
    with store.turn(first.session_id) as turn:
        turn.commit("about metformin", "answer one")

    assert store.history(second.session_id) == ()
    with store.turn(second.session_id) as turn:
        assert turn.history == ()
