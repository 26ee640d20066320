"""Archive record codec.

Log format: [4-byte big-endian length][gzip(serialized record)]...

Serialized record layout (big-endian):
    >I  message_id
    >B  flags (bit 0: deleted, bit 1: compressed)
    >B  hash length, then hash bytes
    >I  data length, then data bytes
    >H  label count, then per label: >H length + UTF-8 bytes
"""

import gzip
import hashlib
import struct
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO

from .errors import MalformedFrameError, TruncatedFrameError

LENGTH_FMT = ">I"
LENGTH_SIZE = 4

FLAG_DELETED = 0x01
FLAG_COMPRESSED = 0x02

_HEAD = struct.Struct(">IBB")
_U32 = struct.Struct(">I")
_U16 = struct.Struct(">H")


def message_digest(data: bytes) -> bytes:
    """SHA-256 of raw message bytes."""
    return hashlib.sha256(data).digest()


def compress(data: bytes) -> bytes:
    # Fixed mtime keeps output deterministic for identical input
    return gzip.compress(data, mtime=0)


def decompress(data: bytes) -> bytes:
    return gzip.decompress(data)


@dataclass
class Record:
    """One entry in the archive log."""
    message_id: int
    message_data: bytes = b""
    message_hash: bytes = b""
    labels: list[str] = field(default_factory=list)
    deleted: bool = False
    compressed: bool = False

    @property
    def is_full(self) -> bool:
        """True for records carrying a message body."""
        return not self.deleted and bool(self.message_hash)

    @property
    def is_label_update(self) -> bool:
        return not self.deleted and not self.message_hash

    def body(self) -> bytes:
        """Return the uncompressed message bytes."""
        if self.compressed:
            return decompress(self.message_data)
        return self.message_data

    def verify(self) -> bool:
        """Check the stored digest against the body. Non-full records always pass."""
        if not self.is_full:
            return True
        return message_digest(self.body()) == self.message_hash


def pack_string(s: str) -> bytes:
    bs = s.encode("utf-8")
    return _U16.pack(len(bs)) + bs


def pack_strings(strings: list[str]) -> bytes:
    return _U16.pack(len(strings)) + b"".join(pack_string(s) for s in strings)


class Reader:
    """Cursor over a serialized buffer; raises MalformedFrameError on overrun."""

    def __init__(self, buf: bytes):
        self.buf = buf
        self.pos = 0

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.buf):
            raise MalformedFrameError(
                f"Record truncated: need {n} bytes at {self.pos}, have {len(self.buf) - self.pos}"
            )
        chunk = self.buf[self.pos:end]
        self.pos = end
        return chunk

    def unpack(self, st: struct.Struct) -> tuple:
        return st.unpack(self.take(st.size))

    def string(self) -> str:
        (n,) = self.unpack(_U16)
        try:
            return self.take(n).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedFrameError(f"Invalid label encoding: {e}") from e

    def strings(self) -> list[str]:
        (count,) = self.unpack(_U16)
        return [self.string() for _ in range(count)]

    def done(self) -> None:
        if self.pos != len(self.buf):
            raise MalformedFrameError(f"{len(self.buf) - self.pos} trailing bytes after record")


def serialize(record: Record) -> bytes:
    flags = 0
    if record.deleted:
        flags |= FLAG_DELETED
    if record.compressed:
        flags |= FLAG_COMPRESSED
    return b"".join([
        _HEAD.pack(record.message_id, flags, len(record.message_hash)),
        record.message_hash,
        _U32.pack(len(record.message_data)),
        record.message_data,
        pack_strings(record.labels),
    ])


def deserialize(buf: bytes) -> Record:
    r = Reader(buf)
    message_id, flags, hash_len = r.unpack(_HEAD)
    message_hash = r.take(hash_len)
    (data_len,) = r.unpack(_U32)
    message_data = r.take(data_len)
    labels = r.strings()
    r.done()
    return Record(
        message_id=message_id,
        message_data=message_data,
        message_hash=message_hash,
        labels=labels,
        deleted=bool(flags & FLAG_DELETED),
        compressed=bool(flags & FLAG_COMPRESSED),
    )


def encode(record: Record) -> bytes:
    """Encode a record as one length-prefixed log frame."""
    payload = compress(serialize(record))
    return struct.pack(LENGTH_FMT, len(payload)) + payload


def decode(payload: bytes) -> Record:
    """Decode a frame payload (without its length prefix)."""
    try:
        buf = decompress(payload)
    except (OSError, EOFError, zlib.error) as e:
        raise MalformedFrameError(f"Bad frame compression: {e}") from e
    return deserialize(buf)


def read_frame(fp: BinaryIO) -> bytes | None:
    """Read one frame payload from fp. Returns None at a clean end of stream."""
    header = fp.read(LENGTH_SIZE)
    if not header:
        return None
    if len(header) < LENGTH_SIZE:
        raise TruncatedFrameError(f"Incomplete frame header ({len(header)} bytes)")
    (length,) = struct.unpack(LENGTH_FMT, header)
    payload = fp.read(length)
    if len(payload) < length:
        raise TruncatedFrameError(f"Incomplete frame: expected {length} bytes, got {len(payload)}")
    return payload
