"""Archive IMAP mailboxes into append-only local logs."""

from .archive import ArchiveStore, Index, IndexRecord, open_archive
from .errors import (
    ConfigError,
    ImapchiveError,
    IndexCorruptError,
    MalformedFrameError,
    ServerError,
    TruncatedFrameError,
)
from .imap import IMAPServer, MailServer, Message, connect_server
from .mbox import write_mbox
from .records import Record
from .sync import Progress, ProgressSnapshot, run_fetch

__all__ = [
    "ArchiveStore",
    "ConfigError",
    "IMAPServer",
    "ImapchiveError",
    "Index",
    "IndexCorruptError",
    "IndexRecord",
    "MailServer",
    "MalformedFrameError",
    "Message",
    "Progress",
    "ProgressSnapshot",
    "Record",
    "ServerError",
    "TruncatedFrameError",
    "connect_server",
    "open_archive",
    "run_fetch",
    "write_mbox",
]
