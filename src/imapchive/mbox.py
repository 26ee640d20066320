"""Render an archive as an mbox file."""

import logging
from typing import BinaryIO

from .archive import ArchiveStore

log = logging.getLogger(__name__)

FROM_LINE = b"From MAILER-DAEMON Thu Jan  1 01:00:00 1970\n"
LABELS_HEADER = b"X-Gmail-Labels: "
FROM_PREFIX = b"From "


def body_lines(body: bytes) -> list[bytes]:
    """Split a message body into lines without their line endings."""
    lines = body.split(b"\n")
    if lines and lines[-1] == b"":
        lines.pop()
    return [line[:-1] if line.endswith(b"\r") else line for line in lines]


def write_message(out: BinaryIO, body: bytes, labels: list[str]) -> None:
    out.write(FROM_LINE)
    if labels:
        out.write(LABELS_HEADER + ",".join(labels).encode("utf-8") + b"\n")
    for line in body_lines(body):
        if line.startswith(FROM_PREFIX):
            out.write(b">")
        out.write(line)
        out.write(b"\n")
    out.write(b"\n")


def write_mbox(store: ArchiveStore, out: BinaryIO) -> int:
    """Write every live message, in log order, to out. Returns the count.

    Only the current full record of each message is written; superseded
    versions, label updates and tombstones are skipped.
    """
    written = 0
    store.rewind()
    for offset, rec in store.iter_records():
        if not rec.is_full or store.offset(rec.message_id) != offset:
            continue
        write_message(out, rec.body(), store.labels(rec.message_id))
        written += 1
    out.flush()
    log.info("Wrote %d messages", written)
    return written
