"""Shared fixtures: an in-memory mail server and archive paths."""

import logging
import threading

import pytest

from imapchive.errors import ServerError
from imapchive.imap import Message


class FakeMailbox:
    """Server-side state shared by every FakeServer connection."""

    def __init__(self, messages: list[tuple[int, bytes, list[str]]] | None = None):
        self.messages: list[Message] = []
        self.bodies: dict[int, bytes] = {}
        self.fail_uids: set[int] = set()
        self.connections: list["FakeServer"] = []
        self._lock = threading.Lock()
        for uid, body, labels in messages or []:
            self.add(uid, body, labels)

    def add(self, uid: int, body: bytes, labels: list[str] | None = None) -> None:
        self.messages.append(Message(uid, sorted(labels or [])))
        self.bodies[uid] = body

    def set_labels(self, uid: int, labels: list[str]) -> None:
        for msg in self.messages:
            if msg.uid == uid:
                msg.labels = sorted(labels)

    def connect(self) -> "FakeServer":
        server = FakeServer(self)
        with self._lock:
            self.connections.append(server)
        return server


class FakeServer:
    """MailServer backed by a FakeMailbox."""

    def __init__(self, mailbox: FakeMailbox):
        self.mailbox = mailbox
        self.searches: list[tuple[int, int]] = []
        self.fetched: list[int] = []
        self.closed = False

    def search_range(self, begin: int, end: int) -> list[Message]:
        self.searches.append((begin, end))
        return [Message(m.uid, list(m.labels)) for m in self.mailbox.messages[begin - 1:end]]

    def fetch_by_uid(self, uid: int) -> bytes:
        if uid in self.mailbox.fail_uids:
            raise ServerError(f"Fetch UID {uid} failed: connection reset")
        self.fetched.append(uid)
        return self.mailbox.bodies[uid]

    def list_mailboxes(self) -> list[str]:
        return ["INBOX", "[Gmail]/All Mail"]

    def mailbox_message_count(self) -> int:
        return len(self.mailbox.messages)

    def close(self) -> None:
        self.closed = True


def make_body(uid: int) -> bytes:
    return (
        f"From: sender{uid}@example.com\r\n"
        f"Subject: Message {uid}\r\n"
        f"\r\n"
        f"Body of message {uid}\r\n"
    ).encode()


@pytest.fixture
def archive_path(tmp_path):
    return tmp_path / "INBOX.imapchive"


@pytest.fixture
def mailbox():
    return FakeMailbox([
        (uid, make_body(uid), ["\\Inbox"] if uid % 2 else ["Work"])
        for uid in range(1, 251)
    ])


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch, tmp_path):
    """Keep real credentials/config out of tests and reset CLI logging setup."""
    for var in ("IMAP_SERVER", "IMAP_EMAIL", "IMAP_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("IMAPCHIVE_CONFIG", str(tmp_path / "no-such-config.yaml"))
    yield
    logger = logging.getLogger("imapchive")
    logger.handlers[:] = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
