"""Append-only message archive with a checksummed checkpoint index.

The archive is a single log file of length-prefixed records (see `records`).
Records are never rewritten: label changes and deletions append new records
for the same UID, and the last one in log order wins.

Opening an archive rebuilds two in-memory maps (UID -> labels, UID -> offset
of the last full record) by loading `<archive>.idx` and replaying whatever
was appended after the offset it covers. If the index is missing or fails
its digest check the whole log is replayed instead.
"""

import hashlib
import logging
import os
import struct
import threading
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .errors import IndexCorruptError, MalformedFrameError, TruncatedFrameError
from .records import (
    Reader,
    Record,
    compress,
    decode,
    decompress,
    encode,
    message_digest,
    pack_strings,
    read_frame,
)

log = logging.getLogger(__name__)

CHECKPOINT_EVERY = 1000
INDEX_SUFFIX = ".idx"
TMP_SUFFIX = ".tmp"
DIGEST_SIZE = 32
DELETED = -1

_INDEX_HEAD = struct.Struct(">qI")
_INDEX_ENTRY = struct.Struct(">Iq")


@dataclass
class IndexRecord:
    """Checkpointed state of one live message."""
    message_id: int
    file_offset: int
    labels: list[str] = field(default_factory=list)


@dataclass
class Index:
    """Snapshot of the archive maps, authoritative up to `file_offset`."""
    file_offset: int
    records: list[IndexRecord] = field(default_factory=list)

    def serialize(self) -> bytes:
        parts = [_INDEX_HEAD.pack(self.file_offset, len(self.records))]
        for rec in self.records:
            parts.append(_INDEX_ENTRY.pack(rec.message_id, rec.file_offset))
            parts.append(pack_strings(rec.labels))
        return b"".join(parts)

    @classmethod
    def deserialize(cls, buf: bytes) -> "Index":
        r = Reader(buf)
        file_offset, count = r.unpack(_INDEX_HEAD)
        records = []
        for _ in range(count):
            message_id, offset = r.unpack(_INDEX_ENTRY)
            records.append(IndexRecord(message_id, offset, r.strings()))
        r.done()
        return cls(file_offset, records)


def index_path_for(path: str | Path) -> Path:
    path = Path(path)
    return path.with_name(path.name + INDEX_SUFFIX)


def load_index(index_path: Path) -> Index:
    """Load and verify a checkpoint index file.

    Raises FileNotFoundError if it doesn't exist, IndexCorruptError if it
    fails the digest or structure checks.
    """
    data = index_path.read_bytes()
    if len(data) < DIGEST_SIZE:
        raise IndexCorruptError(f"Index too short ({len(data)} bytes)")
    digest, payload = data[:DIGEST_SIZE], data[DIGEST_SIZE:]
    try:
        buf = decompress(payload)
    except (OSError, EOFError, zlib.error) as e:
        raise IndexCorruptError(f"Bad index compression: {e}") from e
    if hashlib.sha256(buf).digest() != digest:
        raise IndexCorruptError("Index digest mismatch")
    try:
        return Index.deserialize(buf)
    except MalformedFrameError as e:
        raise IndexCorruptError(f"Malformed index: {e}") from e


class ArchiveStore:
    """Single-writer append-only message archive.

    All public methods hold one lock covering both the log file and the
    in-memory maps, so fetch workers can share an instance.
    """

    def __init__(
        self,
        path: str | Path,
        append: bool = True,
        checkpoint_every: int = CHECKPOINT_EVERY,
    ):
        self.path = Path(path)
        self.index_path = index_path_for(self.path)
        self.append = append
        self.checkpoint_every = checkpoint_every
        self._lock = threading.Lock()
        self._fp = None
        self._labels: dict[int, list[str]] = {}
        self._offsets: dict[int, int] = {}
        self._dirty = 0
        self._end = 0
        self._read_pos = 0

    # --- lifecycle ---

    def open(self) -> "ArchiveStore":
        """Create or open the log and rebuild the in-memory maps."""
        with self._lock:
            fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o600)
            self._fp = os.fdopen(fd, "r+b")
            try:
                self._recover()
            except BaseException:
                self._fp.close()
                self._fp = None
                raise
        return self

    def close(self) -> None:
        """Checkpoint outstanding records and close the log."""
        with self._lock:
            if not self._fp:
                return
            try:
                if self._dirty:
                    self._write_index()
            finally:
                self._fp.close()
                self._fp = None

    @property
    def fp(self):
        if not self._fp:
            raise RuntimeError("Archive not open")
        return self._fp

    @property
    def dirty(self) -> int:
        return self._dirty

    def __enter__(self):
        if not self._fp:
            self.open()
        return self

    def __exit__(self, *args):
        self.close()

    # --- recovery ---

    def _recover(self) -> None:
        self._labels = {}
        self._offsets = {}
        self._dirty = 0

        start = 0
        index = None
        try:
            index = self._read_index()
        except FileNotFoundError:
            pass
        except (IndexCorruptError, OSError) as e:
            log.warning("Reading index %s: %s (reindexing)", self.index_path, e)

        if index is not None:
            for rec in index.records:
                self._offsets[rec.message_id] = rec.file_offset
                self._labels[rec.message_id] = rec.labels
            start = index.file_offset

        self._end = self._scan(start)
        if self._dirty > 0:
            log.debug("Replayed %d records past checkpoint", self._dirty)
            self._write_index()
        self._read_pos = 0

    def _read_index(self) -> Index:
        index = load_index(self.index_path)
        size = os.fstat(self.fp.fileno()).st_size
        if not 0 <= index.file_offset <= size:
            raise IndexCorruptError(
                f"Index covers {index.file_offset} bytes but log has {size}"
            )
        return index

    def _scan(self, start: int) -> int:
        """Replay records from `start` to EOF. Returns the end of the last good frame."""
        fp = self.fp
        fp.seek(start)
        pos = start
        while True:
            try:
                payload = read_frame(fp)
                if payload is None:
                    break
                try:
                    rec = decode(payload)
                except MalformedFrameError as e:
                    if fp.tell() < os.fstat(fp.fileno()).st_size:
                        raise MalformedFrameError(f"{self.path}: record at offset {pos}: {e}") from e
                    # Last frame in the log: length written, payload never landed
                    raise TruncatedFrameError(str(e)) from e
            except TruncatedFrameError as e:
                log.warning("%s: incomplete record at offset %d (%s)", self.path, pos, e)
                if self.append:
                    fp.truncate(pos)
                    fp.flush()
                break
            self._apply(rec, pos)
            pos = fp.tell()
        return pos

    def _apply(self, rec: Record, offset: int) -> None:
        msgid = rec.message_id
        if rec.deleted:
            self._offsets[msgid] = DELETED
            self._labels.pop(msgid, None)
        elif rec.is_full:
            self._offsets[msgid] = offset
            self._labels[msgid] = list(rec.labels)
        elif self._offsets.get(msgid, DELETED) >= 0:
            self._labels[msgid] = list(rec.labels)
        self._dirty += 1

    # --- checkpoint ---

    def checkpoint(self) -> None:
        """Write the checkpoint index now."""
        with self._lock:
            self._write_index()

    def _write_index(self) -> None:
        self.fp.flush()
        index = Index(
            file_offset=self._end,
            records=[
                IndexRecord(msgid, offset, list(self._labels.get(msgid, [])))
                for msgid, offset in sorted(self._offsets.items())
                if offset >= 0
            ],
        )
        buf = index.serialize()
        tmp_path = self.index_path.with_name(self.index_path.name + TMP_SUFFIX)
        with open(tmp_path, "wb") as f:
            f.write(hashlib.sha256(buf).digest())
            f.write(compress(buf))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.index_path)
        self._dirty = 0
        log.debug("Wrote index for %d messages at offset %d", len(index.records), index.file_offset)

    # --- writes ---

    def _append(self, rec: Record) -> int:
        fp = self.fp
        offset = self._end
        frame = encode(rec)
        fp.seek(offset)
        fp.write(frame)
        fp.flush()
        self._end = offset + len(frame)
        self._dirty += 1
        return offset

    def _maybe_checkpoint(self) -> None:
        if self._dirty >= self.checkpoint_every:
            self._write_index()

    def write_message(self, msgid: int, data: bytes, labels: list[str]) -> None:
        """Append a full message record."""
        with self._lock:
            rec = Record(
                message_id=msgid,
                message_data=data,
                message_hash=message_digest(data),
                labels=list(labels),
            )
            offset = self._append(rec)
            self._offsets[msgid] = offset
            self._labels[msgid] = list(labels)
            self._maybe_checkpoint()

    def set_labels(self, msgid: int, labels: list[str]) -> None:
        """Append a label-only record for a message already in the archive."""
        with self._lock:
            if self._offsets.get(msgid, DELETED) < 0:
                raise KeyError(msgid)
            self._append(Record(message_id=msgid, labels=list(labels)))
            self._labels[msgid] = list(labels)
            self._maybe_checkpoint()

    def delete_message(self, msgid: int) -> None:
        """Append a tombstone. Earlier records for msgid stay in the log."""
        with self._lock:
            self._append(Record(message_id=msgid, deleted=True))
            self._offsets[msgid] = DELETED
            self._labels.pop(msgid, None)
            self._maybe_checkpoint()

    def write_close(self) -> None:
        """Wait for any in-flight operation to finish."""
        with self._lock:
            pass

    # --- lookups ---

    def have(self, msgid: int) -> bool:
        with self._lock:
            return self._offsets.get(msgid, DELETED) >= 0

    def labels(self, msgid: int) -> list[str]:
        with self._lock:
            return list(self._labels.get(msgid, []))

    def offset(self, msgid: int) -> int | None:
        """Offset of the message's current full record, or None if not live."""
        with self._lock:
            offset = self._offsets.get(msgid, DELETED)
            return offset if offset >= 0 else None

    def size(self) -> int:
        """Number of live messages."""
        with self._lock:
            return sum(1 for offset in self._offsets.values() if offset >= 0)

    def log_size(self) -> int:
        with self._lock:
            return self._end

    # --- sequential reads ---

    def rewind(self) -> None:
        with self._lock:
            self._read_pos = 0

    def _read_next(self) -> tuple[int, Record] | None:
        if self._read_pos >= self._end:
            return None
        fp = self.fp
        fp.seek(self._read_pos)
        payload = read_frame(fp)
        if payload is None:
            return None
        offset = self._read_pos
        rec = decode(payload)
        self._read_pos = fp.tell()
        return offset, rec

    def read_record(self) -> Record | None:
        """Read the record at the cursor and advance. None at end of log."""
        with self._lock:
            result = self._read_next()
        return result[1] if result else None

    def iter_records(self) -> Iterator[tuple[int, Record]]:
        """Yield (offset, record) from the cursor to the end of the log."""
        while True:
            with self._lock:
                result = self._read_next()
            if result is None:
                return
            yield result

    def verify(self) -> list[int]:
        """Re-read the whole log and return UIDs whose stored digest doesn't match."""
        bad = []
        with self._lock:
            fp = self.fp
            fp.seek(0)
            pos = 0
            while pos < self._end:
                payload = read_frame(fp)
                if payload is None:
                    break
                rec = decode(payload)
                if not rec.verify():
                    log.warning("Digest mismatch for UID %d at offset %d", rec.message_id, pos)
                    bad.append(rec.message_id)
                pos = fp.tell()
        return bad


def open_archive(path: str | Path, append: bool = True) -> ArchiveStore:
    """Open (creating if needed) the archive at path."""
    return ArchiveStore(path, append=append).open()
