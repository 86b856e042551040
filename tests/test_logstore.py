from __future__ import annotations

from threading import Thread

from botharbor.logstore import LogLine, LogStore, LogStream, is_qr_line
from botharbor.persistence import NullPersistence
from botharbor.registry import DeploymentEntry


class RecordingPersistence(NullPersistence):
    def __init__(self):
        self.appended: list[LogLine] = []
        self.cleared = 0

    def append_logs(self, server_id, deployment_id, lines):
        self.appended.extend(lines)

    def clear_logs(self, server_id, deployment_id):
        self.cleared += 1


def _entry() -> DeploymentEntry:
    return DeploymentEntry(deployment_id="d1", server_id="s1")


def test_ids_increase_and_pages_rebuild_the_history():
    store = LogStore(page_size=7)
    entry = _entry()
    for i in range(50):
        store.append(entry, LogStream.STDOUT, f"line {i}")

    pages = []
    page = store.get_page(entry)
    while page:
        pages.insert(0, page)
        page = store.get_page(entry, before_id=page[0].id)

    flat = [line for p in pages for line in p]
    assert [line.message for line in flat] == [f"line {i}" for i in range(50)]
    ids = [line.id for line in flat]
    assert ids == sorted(set(ids))


def test_concurrent_appends_keep_unique_ids():
    store = LogStore()
    entry = _entry()

    def writer(n):
        for i in range(100):
            store.append(entry, LogStream.STDOUT, f"{n}-{i}")

    threads = [Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    ids = [line.id for line in entry.logs]
    assert len(ids) == 400
    assert ids == sorted(set(ids))


def test_get_page_before_unknown_or_first_id():
    store = LogStore()
    entry = _entry()
    first = store.append(entry, LogStream.SYSTEM, "a")
    store.append(entry, LogStream.SYSTEM, "b")

    assert store.get_page(entry, before_id=first.id) == []
    assert [line.message for line in store.get_page(entry, before_id=10_000)] == ["a", "b"]
    assert store.get_page(entry, page_size=0) == []


def test_qr_line_replaces_slot_instead_of_appending():
    persistence = RecordingPersistence()
    store = LogStore(persistence)
    entry = _entry()

    store.append(entry, LogStream.STDOUT, "Scan the QR code below")
    store.append(entry, LogStream.STDOUT, "qr code: second")

    assert entry.logs == []
    assert entry.qr_log.message == "qr code: second"
    assert persistence.appended == []
    assert is_qr_line("New QR Code generated")
    assert not is_qr_line("query code")


def test_clear_empties_logs_and_qr_slot():
    persistence = RecordingPersistence()
    store = LogStore(persistence)
    entry = _entry()
    store.append(entry, LogStream.STDOUT, "hello")
    store.append(entry, LogStream.STDOUT, "QR code")

    store.clear(entry)

    assert entry.logs == []
    assert entry.qr_log is None
    assert persistence.cleared == 1
    # Ids keep growing after a clear
    assert store.append(entry, LogStream.SYSTEM, "after").id == 3


def test_append_persists_each_line_and_strips_newlines():
    persistence = RecordingPersistence()
    store = LogStore(persistence)
    entry = _entry()

    line = store.append(entry, "stderr", "oops\n")

    assert line.stream is LogStream.STDERR
    assert line.message == "oops"
    assert persistence.appended == [line]


def test_subscribe_and_unsubscribe():
    store = LogStore()
    entry = _entry()
    seen = []
    unsubscribe = store.subscribe(entry.key, lambda kind, line: seen.append((kind, line.message)))

    store.append(entry, LogStream.STDOUT, "one")
    store.append(entry, LogStream.STDOUT, "QR code xyz")
    unsubscribe()
    store.append(entry, LogStream.STDOUT, "two")

    assert seen == [("log", "one"), ("qr", "QR code xyz")]


def test_log_line_dict_form():
    line = LogLine(id=4, stream=LogStream.INPUT, message="hi", timestamp="2024-01-01T00:00:00+00:00")
    data = line.to_dict()
    assert data == {"id": 4, "stream": "input", "message": "hi", "timestamp": "2024-01-01T00:00:00+00:00"}
    assert LogLine.from_dict(data) == line


class LockCheckingPersistence(RecordingPersistence):
    """Records whether the entry lock was held by the calling thread."""

    def __init__(self, entry: DeploymentEntry):
        super().__init__()
        self.entry = entry
        self.held: list[bool] = []

    def _lock_is_ours(self) -> bool:
        # Another thread can take the lock only if this one does not hold it
        outcome: list[bool] = []

        def other():
            got = self.entry.lock.acquire(blocking=False)
            if got:
                self.entry.lock.release()
            outcome.append(not got)

        t = Thread(target=other)
        t.start()
        t.join()
        return outcome[0]

    def clear_logs(self, server_id, deployment_id):
        self.held.append(self._lock_is_ours())
        super().clear_logs(server_id, deployment_id)


def test_clear_persists_while_holding_the_entry_lock():
    entry = _entry()
    persistence = LockCheckingPersistence(entry)
    store = LogStore(persistence)
    store.append(entry, LogStream.STDOUT, "hello")

    store.clear(entry)

    assert persistence.held == [True]


def test_removed_entry_lines_are_not_persisted():
    persistence = RecordingPersistence()
    store = LogStore(persistence)
    entry = _entry()
    entry.deleted = True

    store.append(entry, LogStream.STDOUT, "late line")
    store.clear(entry)

    assert [line.message for line in entry.logs] == []
    assert persistence.appended == []
    assert persistence.cleared == 0
