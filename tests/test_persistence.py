import time

import pytest

from botharbor.logstore import LogLine, LogStream
from botharbor.persistence import JsonFilePersistence, NullPersistence


def test_save_load_round_trip_with_logs(tmp_path):
    store = JsonFilePersistence(tmp_path)
    store.save("s", "d", {"deployment_id": "d", "server_id": "s", "stage": "running", "logs": ["dropped"]})
    store.append_logs("s", "d", [LogLine(id=1, stream=LogStream.STDOUT, message="hello")])
    store.append_logs("s", "d", [])

    state = store.load("s", "d")

    assert state["stage"] == "running"
    assert [row["message"] for row in state["logs"]] == ["hello"]
    assert (tmp_path / "s" / "d" / "state.json").exists()


def test_corrupt_log_rows_are_skipped(tmp_path):
    store = JsonFilePersistence(tmp_path)
    store.save("s", "d", {"stage": "stopped"})
    with open(tmp_path / "s" / "d" / "logs.jsonl", "a") as f:
        f.write("{broken\n")
    store.append_logs("s", "d", [LogLine(id=2, stream=LogStream.SYSTEM, message="ok")])

    assert [row["id"] for row in store.load("s", "d")["logs"]] == [2]


def test_load_latest_picks_most_recent(tmp_path):
    store = JsonFilePersistence(tmp_path)
    store.save("s", "old", {"deployment_id": "old"})
    time.sleep(0.01)
    store.save("s", "new", {"deployment_id": "new"})

    assert store.load_latest("s")["deployment_id"] == "new"
    assert store.load_latest("nobody") is None


def test_clear_logs_and_delete(tmp_path):
    store = JsonFilePersistence(tmp_path)
    store.save("s", "d", {})
    store.append_logs("s", "d", [LogLine(id=1, stream=LogStream.STDOUT, message="x")])

    store.clear_logs("s", "d")
    assert store.load("s", "d")["logs"] == []

    store.delete("s", "d")
    assert store.load("s", "d") is None


@pytest.mark.parametrize("bad", ["..", "a/b", ""])
def test_storage_keys_cannot_escape_root(tmp_path, bad):
    store = JsonFilePersistence(tmp_path)
    with pytest.raises(ValueError):
        store.save(bad, "d", {})


def test_null_persistence_keeps_nothing():
    store = NullPersistence()
    store.save("s", "d", {"x": 1})
    assert store.load("s", "d") is None
    assert store.load_latest("s") is None
