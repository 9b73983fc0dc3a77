"""Tests for shared helpers and storage edge cases."""

import threading

import pytest

from shutterbox import Storage
from shutterbox.Helpers import PeriodicTask, current_user_id, parse_positive_int

from conftest import auth


@pytest.mark.parametrize("raw, expected", [("3", 3), (None, 20), ("abc", 20), ("0", 20), ("-4", 20)])
def test_parse_positive_int(raw, expected):
    assert parse_positive_int(raw, 20) == expected


def test_current_user_id_prefers_header(app):
    with app.test_request_context(headers=auth("alice")):
        assert current_user_id() == "alice"
    with app.test_request_context():
        assert current_user_id() is None


def test_periodic_task_runs_and_cancels():
    ran = threading.Event()
    task = PeriodicTask(0.01, ran.set, name="test-task")
    task.start()
    assert ran.wait(2)
    task.cancel()
    assert not task.running


def test_periodic_task_survives_errors():
    calls = []
    done = threading.Event()

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("first run fails")
        done.set()

    task = PeriodicTask(0.01, flaky)
    task.start()
    assert done.wait(2)
    task.cancel()


def test_unknown_notification_type_rejected(db):
    with pytest.raises(ValueError):
        Storage.create_notification(db, "alice", "poke")


def test_direct_conversation_lookup_is_exact(db):
    pair = Storage.create_conversation(db, ["alice", "bob"])
    Storage.create_conversation(db, ["alice", "bob", "carol"])

    assert Storage.find_direct_conversation(db, "alice", "bob") == pair
    assert Storage.find_direct_conversation(db, "bob", "alice") == pair
    assert Storage.find_direct_conversation(db, "alice", "carol") is None


def test_messages_list_keeps_latest_in_order(db):
    conversation = Storage.create_conversation(db, ["alice", "bob"])
    for i in range(5):
        Storage.create_message(db, conversation, "alice", "m%d" % i)

    messages = Storage.list_messages(db, conversation, 3)

    assert [m["content"] for m in messages] == ["m2", "m3", "m4"]
