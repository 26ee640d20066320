"""Concurrent mailbox sync: adaptive scanner feeding a pool of fetch workers.

One scanner thread walks the mailbox's sequence numbers in windows and
queues UIDs the archive doesn't have yet (updating labels in place for the
ones it does). N worker threads, each with its own server connection, drain
the queue and append message bodies to the archive. The first failure in
any thread aborts the whole run.
"""

import concurrent.futures
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable

from .archive import ArchiveStore
from .imap import MailServer, Message

log = logging.getLogger(__name__)

MIN_WINDOW = 100
MAX_WINDOW = 3200
QUEUE_SIZE = 1000
REPORT_INTERVAL = 10.0
POLL_INTERVAL = 0.5


class PipelineAborted(Exception):
    """Raised inside pipeline threads once another thread has failed."""


# =============================================================================
# Progress
# =============================================================================


@dataclass(frozen=True)
class ProgressSnapshot:
    scanned: int = 0
    to_scan: int = 0
    fetched: int = 0
    labels: int = 0

    def __str__(self) -> str:
        return (
            f"{self.scanned:,} of {self.to_scan:,} scanned, "
            f"{self.fetched:,} fetched, {self.labels:,} label updates"
        )


class Progress:
    """Counters shared by the scanner and workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._scanned = 0
        self._to_scan = 0
        self._fetched = 0
        self._labels = 0

    def set_to_scan(self, n: int) -> None:
        with self._lock:
            self._to_scan = n

    def add_scanned(self, n: int = 1) -> None:
        with self._lock:
            self._scanned += n

    def add_fetched(self, n: int = 1) -> None:
        with self._lock:
            self._fetched += n

    def add_labels(self, n: int = 1) -> None:
        with self._lock:
            self._labels += n

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(
                scanned=self._scanned,
                to_scan=self._to_scan,
                fetched=self._fetched,
                labels=self._labels,
            )


class ProgressReporter(threading.Thread):
    """Daemon thread that reports a progress snapshot every `interval` seconds."""

    def __init__(
        self,
        progress: Progress,
        interval: float = REPORT_INTERVAL,
        report: Callable[[ProgressSnapshot], None] | None = None,
    ):
        super().__init__(name="progress", daemon=True)
        self.progress = progress
        self.interval = interval
        self.report = report or (lambda snap: log.info("%s", snap))
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.report(self.progress.snapshot())

    def stop(self) -> None:
        self._stop_event.set()
        self.join()


# =============================================================================
# Work queue
# =============================================================================

_CLOSED = object()


class WorkQueue:
    """Bounded queue with close (end of work) and abort (fail-fast) signals.

    `put` blocks while the queue is full; `get` blocks while it's empty and
    returns None once the queue is closed and drained, or aborted.
    """

    def __init__(self, maxsize: int = QUEUE_SIZE, poll: float = POLL_INTERVAL):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._aborted = threading.Event()
        self.poll = poll

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def put(self, item) -> None:
        while True:
            if self._aborted.is_set():
                raise PipelineAborted()
            try:
                self._queue.put(item, timeout=self.poll)
                return
            except queue.Full:
                continue

    def get(self):
        while True:
            if self._aborted.is_set():
                return None
            try:
                item = self._queue.get(timeout=self.poll)
            except queue.Empty:
                continue
            if item is _CLOSED:
                # Leave the marker for the other consumers
                self._queue.put(_CLOSED)
                return None
            return item

    def close(self) -> None:
        self.put(_CLOSED)

    def abort(self) -> None:
        self._aborted.set()


# =============================================================================
# Scanner
# =============================================================================


def next_window(size: int, fetch_count: int) -> int:
    """Grow the window over already-archived stretches, shrink it over new mail."""
    if fetch_count == 0:
        return min(size * 2, MAX_WINDOW)
    return max(size // 2, MIN_WINDOW)


class Scanner:
    """Walks sequence numbers 1..N and queues UIDs missing from the archive."""

    def __init__(
        self,
        server: MailServer,
        store: ArchiveStore,
        work: WorkQueue,
        progress: Progress,
        window: int = MIN_WINDOW,
    ):
        self.server = server
        self.store = store
        self.work = work
        self.progress = progress
        self.window = window
        self.windows: list[int] = []

    def scan_window(self, begin: int, end: int) -> int:
        """Process one window; returns the number of messages queued for fetch."""
        msgs = self.server.search_range(begin, end)
        self.progress.add_scanned(len(msgs))
        queued = 0
        for msg in msgs:
            if not self.store.have(msg.uid):
                self.work.put(msg)
                queued += 1
            elif self.store.labels(msg.uid) != msg.labels:
                self.store.set_labels(msg.uid, msg.labels)
                self.progress.add_labels()
        return queued

    def run(self, total: int) -> None:
        begin = 1
        while begin <= total:
            end = min(begin + self.window - 1, total)
            self.windows.append(self.window)
            queued = self.scan_window(begin, end)
            log.debug("Scanned %d:%d, %d to fetch", begin, end, queued)
            begin = end + 1
            self.window = next_window(self.window, queued)
        self.work.close()


# =============================================================================
# Workers
# =============================================================================


class FetchWorker:
    """Drains the work queue, fetching bodies and writing them to the archive."""

    def __init__(
        self,
        server: MailServer,
        store: ArchiveStore,
        work: WorkQueue,
        progress: Progress,
    ):
        self.server = server
        self.store = store
        self.work = work
        self.progress = progress

    def run(self) -> None:
        while True:
            msg: Message | None = self.work.get()
            if msg is None:
                return
            body = self.server.fetch_by_uid(msg.uid)
            self.store.write_message(msg.uid, body, msg.labels)
            self.progress.add_fetched()


# =============================================================================
# Orchestration
# =============================================================================


def _first_error(futures: list[concurrent.futures.Future], done: set) -> BaseException | None:
    for future in futures:
        if future not in done:
            continue
        e = future.exception()
        if e is not None and not isinstance(e, PipelineAborted):
            return e
    return None


def run_fetch(
    connect: Callable[[], MailServer],
    store: ArchiveStore,
    concurrency: int = 4,
    progress: Progress | None = None,
    report_interval: float = REPORT_INTERVAL,
    queue_size: int = QUEUE_SIZE,
    report: Callable[[ProgressSnapshot], None] | None = None,
) -> ProgressSnapshot:
    """Sync the mailbox behind `connect` into `store`.

    `connect` is called once for the scanner and once per worker; each call
    must return a fresh connection with the mailbox selected. `report`, if
    given, receives a snapshot every `report_interval` seconds and once more
    when the run completes. Raises the first error hit by any thread.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")
    progress = progress or Progress()
    work = WorkQueue(maxsize=queue_size)
    servers: list[MailServer] = []
    reporter: ProgressReporter | None = None

    def work_loop():
        server = connect()
        servers.append(server)
        FetchWorker(server, store, work, progress).run()

    scan_server = connect()
    servers.append(scan_server)
    try:
        total = scan_server.mailbox_message_count()
        progress.set_to_scan(total)
        log.info("Mailbox has %d messages", total)

        reporter = ProgressReporter(progress, report_interval, report)
        reporter.start()

        scanner = Scanner(scan_server, store, work, progress)
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=concurrency + 1,
            thread_name_prefix="fetch",
        )
        try:
            futures = [executor.submit(scanner.run, total)]
            futures += [executor.submit(work_loop) for _ in range(concurrency)]
            done, _ = concurrent.futures.wait(
                futures, return_when=concurrent.futures.FIRST_EXCEPTION
            )
            error = _first_error(futures, done)
            if error is not None:
                log.error("Fetch failed: %s", error)
                work.abort()
        except BaseException:
            # Unblock the pool so shutdown can join it
            work.abort()
            raise
        finally:
            executor.shutdown(wait=True)
    finally:
        if reporter is not None:
            reporter.stop()
        for server in servers:
            server.close()

    store.write_close()
    if error is not None:
        raise error
    snap = progress.snapshot()
    if report is not None:
        report(snap)
    log.info("Done: %s", snap)
    return snap
