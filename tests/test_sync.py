"""Tests for the scanner, worker pool and progress tracking."""

import threading
import time

import pytest

from conftest import FakeMailbox, make_body
from imapchive.archive import open_archive
from imapchive.errors import ServerError
from imapchive.imap import Message
from imapchive.sync import (
    MAX_WINDOW,
    MIN_WINDOW,
    PipelineAborted,
    Progress,
    ProgressReporter,
    Scanner,
    WorkQueue,
    next_window,
    run_fetch,
)


class FakeStore:
    """Just the lookups and label updates the scanner uses."""

    def __init__(self, labels: dict[int, list[str]] | None = None):
        self._labels = labels or {}
        self.label_updates: list[tuple[int, list[str]]] = []

    def have(self, uid):
        return uid in self._labels

    def labels(self, uid):
        return list(self._labels.get(uid, []))

    def set_labels(self, uid, labels):
        self._labels[uid] = list(labels)
        self.label_updates.append((uid, list(labels)))


def drain(work: WorkQueue) -> list:
    items = []
    while (item := work.get()) is not None:
        items.append(item)
    return items


class TestNextWindow:
    def test_doubles_on_empty_windows(self):
        sizes = [MIN_WINDOW]
        for _ in range(5):
            sizes.append(next_window(sizes[-1], 0))
        assert sizes == [100, 200, 400, 800, 1600, 3200]

    def test_capped(self):
        assert next_window(MAX_WINDOW, 0) == MAX_WINDOW
        assert next_window(2000, 0) == MAX_WINDOW

    def test_halves_on_fetch(self):
        assert next_window(3200, 1) == 1600
        assert next_window(400, 50) == 200

    def test_floor(self):
        assert next_window(MIN_WINDOW, 1) == MIN_WINDOW
        assert next_window(150, 3) == MIN_WINDOW


class TestScanner:
    def test_windows_grow_over_archived_mail(self):
        mailbox = FakeMailbox([(uid, b"", []) for uid in range(1, 6301)])
        store = FakeStore({uid: [] for uid in range(1, 6301)})
        work = WorkQueue()
        server = mailbox.connect()
        scanner = Scanner(server, store, work, Progress())
        scanner.run(6300)
        assert scanner.windows == [100, 200, 400, 800, 1600, 3200]
        assert server.searches[0] == (1, 100)
        assert server.searches[-1] == (3101, 6300)
        assert drain(work) == []

    def test_windows_shrink_over_new_mail(self):
        mailbox = FakeMailbox([(uid, b"", []) for uid in range(1, 1001)])
        store = FakeStore({uid: [] for uid in range(1, 1001) if uid != 150})
        work = WorkQueue()
        scanner = Scanner(mailbox.connect(), store, work, Progress())
        scanner.run(1000)
        assert scanner.windows == [100, 200, 100, 200, 400]
        assert [m.uid for m in drain(work)] == [150]

    def test_last_window_clipped(self):
        mailbox = FakeMailbox([(uid, b"", []) for uid in range(1, 151)])
        server = mailbox.connect()
        scanner = Scanner(server, FakeStore(), WorkQueue(), Progress())
        scanner.run(150)
        assert server.searches == [(1, 100), (101, 150)]

    def test_queues_missing_in_order(self):
        mailbox = FakeMailbox([(uid, b"", ["x"]) for uid in (10, 20, 30, 40)])
        store = FakeStore({20: ["x"], 40: ["x"]})
        work = WorkQueue()
        progress = Progress()
        Scanner(mailbox.connect(), store, work, progress).run(4)
        assert drain(work) == [Message(10, ["x"]), Message(30, ["x"])]
        assert progress.snapshot().scanned == 4
        assert store.label_updates == []

    def test_label_changes(self):
        mailbox = FakeMailbox([(1, b"", ["a", "b"]), (2, b"", ["a"])])
        store = FakeStore({1: ["a"], 2: ["a"]})
        progress = Progress()
        Scanner(mailbox.connect(), store, WorkQueue(), progress).run(2)
        assert store.label_updates == [(1, ["a", "b"])]
        assert progress.snapshot().labels == 1

    def test_empty_mailbox(self):
        server = FakeMailbox().connect()
        work = WorkQueue()
        Scanner(server, FakeStore(), work, Progress()).run(0)
        assert server.searches == []
        assert work.get() is None


class TestWorkQueue:
    def test_close_reaches_every_consumer(self):
        work = WorkQueue(poll=0.01)
        work.put(1)
        work.close()
        results = []

        def consume():
            results.append(drain(work))

        threads = [threading.Thread(target=consume) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert not any(t.is_alive() for t in threads)
        assert sorted(sum(results, [])) == [1]

    def test_backpressure(self):
        work = WorkQueue(maxsize=1, poll=0.01)
        work.put("a")
        done = threading.Event()

        def produce():
            work.put("b")
            done.set()

        t = threading.Thread(target=produce)
        t.start()
        assert not done.wait(0.1)
        assert work.get() == "a"
        assert done.wait(5)
        assert work.get() == "b"
        t.join()

    def test_abort(self):
        work = WorkQueue(maxsize=1, poll=0.01)
        work.put("a")
        work.abort()
        assert work.aborted
        assert work.get() is None
        with pytest.raises(PipelineAborted):
            work.put("b")


class TestProgress:
    def test_concurrent_increments(self):
        progress = Progress()

        def bump():
            for _ in range(1000):
                progress.add_fetched()
                progress.add_scanned(2)

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        snap = progress.snapshot()
        assert snap.fetched == 8000
        assert snap.scanned == 16000

    def test_snapshot_str(self):
        progress = Progress()
        progress.set_to_scan(2000)
        progress.add_scanned(1500)
        progress.add_fetched(3)
        assert str(progress.snapshot()) == "1,500 of 2,000 scanned, 3 fetched, 0 label updates"

    def test_reporter(self):
        progress = Progress()
        progress.add_fetched(5)
        seen = []
        reporter = ProgressReporter(progress, interval=0.01, report=seen.append)
        reporter.start()
        deadline = time.monotonic() + 5
        while not seen and time.monotonic() < deadline:
            time.sleep(0.01)
        reporter.stop()
        assert seen
        assert seen[0].fetched == 5
        assert not reporter.is_alive()


class TestRunFetch:
    def test_archives_everything(self, mailbox, archive_path):
        with open_archive(archive_path) as store:
            snap = run_fetch(mailbox.connect, store, concurrency=3, report_interval=60)
            assert store.size() == 250
            assert store.labels(1) == ["\\Inbox"]
            assert store.labels(2) == ["Work"]
        assert snap.to_scan == 250
        assert snap.scanned == 250
        assert snap.fetched == 250
        assert snap.labels == 0
        # One scanner connection plus one per worker, all closed
        assert len(mailbox.connections) == 4
        assert all(conn.closed for conn in mailbox.connections)

        with open_archive(archive_path, append=False) as store:
            bodies = {rec.message_id: rec.body() for _, rec in store.iter_records()}
        assert bodies == mailbox.bodies

    def test_incremental(self, mailbox, archive_path):
        with open_archive(archive_path) as store:
            run_fetch(mailbox.connect, store, concurrency=2, report_interval=60)

        mailbox.add(300, make_body(300), ["New"])
        mailbox.set_labels(10, ["Archived", "Work"])
        with open_archive(archive_path) as store:
            snap = run_fetch(mailbox.connect, store, concurrency=2, report_interval=60)
            assert snap.fetched == 1
            assert snap.labels == 1
            assert store.size() == 251
            assert store.labels(10) == ["Archived", "Work"]
            assert store.labels(300) == ["New"]

    def test_nothing_to_do(self, mailbox, archive_path):
        with open_archive(archive_path) as store:
            run_fetch(mailbox.connect, store, concurrency=2, report_interval=60)
            size = store.log_size()
            snap = run_fetch(mailbox.connect, store, concurrency=2, report_interval=60)
            assert snap.fetched == 0
            assert store.log_size() == size

    def test_fetch_failure_aborts(self, mailbox, archive_path):
        mailbox.fail_uids.add(42)
        with open_archive(archive_path) as store:
            with pytest.raises(ServerError, match="UID 42"):
                run_fetch(mailbox.connect, store, concurrency=2, report_interval=60, queue_size=5)
            assert not store.have(42)
        assert all(conn.closed for conn in mailbox.connections)

    def test_connect_failure_aborts(self, mailbox, archive_path):
        calls = []

        def connect():
            calls.append(1)
            if len(calls) > 1:
                raise ServerError("Login failed")
            return mailbox.connect()

        with open_archive(archive_path) as store:
            with pytest.raises(ServerError, match="Login failed"):
                run_fetch(connect, store, concurrency=2, report_interval=60, queue_size=5)

    def test_count_failure_closes_scanner(self, mailbox, archive_path):
        server = mailbox.connect()

        def broken_count():
            raise ServerError("No mailbox selected")

        server.mailbox_message_count = broken_count
        with open_archive(archive_path) as store:
            with pytest.raises(ServerError, match="No mailbox selected"):
                run_fetch(lambda: server, store, concurrency=2, report_interval=60)
        assert server.closed

    def test_reports_final_snapshot(self, mailbox, archive_path):
        seen = []
        with open_archive(archive_path) as store:
            run_fetch(mailbox.connect, store, concurrency=2, report_interval=60, report=seen.append)
        assert seen[-1].fetched == 250
        assert seen[-1].scanned == seen[-1].to_scan == 250

    def test_no_report_after_failure(self, mailbox, archive_path):
        mailbox.fail_uids.add(3)
        seen = []
        with open_archive(archive_path) as store:
            with pytest.raises(ServerError):
                run_fetch(mailbox.connect, store, concurrency=2, report_interval=60, report=seen.append)
        assert seen == []

    def test_invalid_concurrency(self, mailbox, archive_path):
        with open_archive(archive_path) as store:
            with pytest.raises(ValueError):
                run_fetch(mailbox.connect, store, concurrency=0)

    def test_shares_progress(self, mailbox, archive_path):
        progress = Progress()
        with open_archive(archive_path) as store:
            run_fetch(mailbox.connect, store, concurrency=2, progress=progress, report_interval=60)
        assert progress.snapshot().fetched == 250
