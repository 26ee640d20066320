"""Mail server interface and its imaplib adapter."""

import imaplib
import re
from dataclasses import dataclass, field
from typing import Protocol

from .errors import ServerError

IMAP_PORT = 993
RFC822_ATTR = "RFC822"
UID_ATTR = "UID"
LABEL_ATTR = "X-GM-LABELS"


@dataclass
class Message:
    """A UID seen during a scan, with its server-side labels."""
    uid: int
    labels: list[str] = field(default_factory=list)


class MailServer(Protocol):
    """What the sync pipeline needs from a server connection."""

    def search_range(self, begin: int, end: int) -> list[Message]:
        """UIDs (and labels) for sequence numbers begin..end inclusive."""
        ...

    def fetch_by_uid(self, uid: int) -> bytes:
        ...

    def list_mailboxes(self) -> list[str]:
        ...

    def mailbox_message_count(self) -> int:
        ...

    def close(self) -> None:
        ...


def parse_server(server: str) -> tuple[str, int]:
    """Split "host[:port]" into (host, port)."""
    host, sep, port = server.rpartition(":")
    if sep and port.isdigit():
        return host, int(port)
    return server, IMAP_PORT


# =============================================================================
# Response parsing
# =============================================================================

_LITERAL_RE = re.compile(rb"\{(\d+)\}$")
_TOKEN_RE = re.compile(rb'\s*(?:(\()|(\))|"((?:[^"\\]|\\.)*)"|([^\s()"]+))')


class _Literal(bytes):
    pass


_LPAREN = object()
_RPAREN = object()


def _tokenize(text: bytes, tokens: list) -> None:
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            if text[pos:].strip():
                raise ServerError(f"Unparseable response: {text!r}")
            break
        pos = m.end()
        lparen, rparen, quoted, atom = m.groups()
        if lparen:
            tokens.append(_LPAREN)
        elif rparen:
            tokens.append(_RPAREN)
        elif quoted is not None:
            tokens.append(re.sub(rb"\\(.)", rb"\1", quoted).decode("utf-8", "replace"))
        else:
            tokens.append(atom.decode("utf-8", "replace"))


def _nest(tokens: list) -> list:
    stack: list[list] = [[]]
    for tok in tokens:
        if tok is _LPAREN:
            stack.append([])
        elif tok is _RPAREN:
            if len(stack) == 1:
                raise ServerError("Unbalanced ')' in response")
            done = stack.pop()
            stack[-1].append(done)
        else:
            stack[-1].append(tok)
    if len(stack) != 1:
        raise ServerError("Unbalanced '(' in response")
    return stack[0]


def parse_fetch_items(data: list) -> list[dict[str, object]]:
    """Parse imaplib FETCH output into one {ATTR: value} dict per message.

    imaplib returns plain bytes for simple responses and (head, literal)
    tuples when the server sends a {n} literal.
    """
    tokens: list = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            head, literal = item
            _tokenize(_LITERAL_RE.sub(b"", head), tokens)
            tokens.append(_Literal(literal))
        else:
            _tokenize(item, tokens)

    result = []
    nested = _nest(tokens)
    for i in range(0, len(nested) - 1, 2):
        attrs = nested[i + 1]
        if not isinstance(attrs, list):
            raise ServerError(f"Expected attribute list after {nested[i]!r}")
        result.append({
            str(attrs[j]).upper(): attrs[j + 1]
            for j in range(0, len(attrs) - 1, 2)
        })
    return result


def _label_str(value) -> str:
    if isinstance(value, _Literal):
        return bytes(value).decode("utf-8", "replace")
    return str(value)


def parse_messages(data: list) -> list[Message]:
    """Extract UIDs and sorted Gmail labels from a FETCH (UID X-GM-LABELS) response."""
    messages = []
    for attrs in parse_fetch_items(data):
        if UID_ATTR not in attrs:
            # Unsolicited flag updates carry no UID
            continue
        labels = attrs.get(LABEL_ATTR) or []
        if not isinstance(labels, list):
            labels = [labels]
        messages.append(Message(
            uid=int(attrs[UID_ATTR]),
            labels=sorted(_label_str(lbl) for lbl in labels),
        ))
    return messages


def parse_mailbox_name(line: bytes) -> str | None:
    """Extract the mailbox name from one LIST response line."""
    # b'(\\HasNoChildren) "/" "INBOX"'
    m = re.match(rb'\(([^)]*)\)\s+("(?:[^"\\]|\\.)*"|NIL)\s+(.+)$', line)
    if not m:
        return None
    name = m.group(3).strip()
    if name.startswith(b'"') and name.endswith(b'"'):
        name = re.sub(rb"\\(.)", rb"\1", name[1:-1])
    return name.decode("utf-8", "replace")


# =============================================================================
# imaplib adapter
# =============================================================================


class IMAPServer:
    """MailServer implementation over imaplib.IMAP4_SSL."""

    def __init__(self, host: str, port: int = IMAP_PORT, labels: bool | None = None):
        self.host = host
        self.port = port
        # Only ask for labels when talking to Gmail
        self.labels = "gmail.com" in host if labels is None else labels
        self.mailbox: str | None = None
        self._count: int | None = None
        self._conn: imaplib.IMAP4_SSL | None = None

    def connect(self, user: str, password: str, mailbox: str | None = None) -> None:
        try:
            self._conn = imaplib.IMAP4_SSL(self.host, self.port)
        except OSError as e:
            raise ServerError(f"Connecting to {self.host}:{self.port}: {e}") from e
        try:
            self._conn.login(user, password)
        except imaplib.IMAP4.error as e:
            raise ServerError(f"Login failed: {e}") from e
        if mailbox:
            self.select(mailbox)

    def disconnect(self) -> None:
        if self._conn:
            try:
                self._conn.logout()
            except (imaplib.IMAP4.error, OSError):
                pass
            self._conn = None

    close = disconnect

    @property
    def conn(self) -> imaplib.IMAP4_SSL:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    def _check(self, typ: str, data, what: str) -> None:
        if typ != "OK":
            raise ServerError(f"{what} failed: {data}")

    def _discard_unsolicited(self) -> None:
        # EXISTS/EXPUNGE/FETCH notifications pile up between commands
        self.conn.untagged_responses.clear()

    def select(self, mailbox: str) -> int:
        """Select a mailbox read-only, return its message count."""
        typ, data = self.conn.select(imaplib_quote(mailbox), readonly=True)
        self._check(typ, data, f"Select {mailbox}")
        self.mailbox = mailbox
        self._count = int(data[0])
        return self._count

    def mailbox_message_count(self) -> int:
        if self._count is None:
            raise ServerError("No mailbox selected")
        return self._count

    def list_mailboxes(self) -> list[str]:
        typ, data = self.conn.list()
        self._check(typ, data, "List mailboxes")
        names = []
        for item in data:
            if isinstance(item, tuple):
                # Name sent as a literal
                names.append(item[1].decode("utf-8", "replace"))
                continue
            if item is None:
                continue
            name = parse_mailbox_name(item)
            if name is not None:
                names.append(name)
        self._discard_unsolicited()
        return names

    def search_range(self, begin: int, end: int) -> list[Message]:
        items = [UID_ATTR]
        if self.labels:
            items.append(LABEL_ATTR)
        typ, data = self.conn.fetch(f"{begin}:{end}", f"({' '.join(items)})")
        self._check(typ, data, f"Search {begin}:{end}")
        messages = parse_messages(data)
        self._discard_unsolicited()
        return messages

    def fetch_by_uid(self, uid: int) -> bytes:
        typ, data = self.conn.uid("FETCH", str(uid), f"({RFC822_ATTR})")
        self._check(typ, data, f"Fetch UID {uid}")
        self._discard_unsolicited()
        for item in data:
            if isinstance(item, tuple) and RFC822_ATTR.encode() in item[0].upper():
                return item[1]
        raise ServerError(f"No message body returned for UID {uid}")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()


def imaplib_quote(mailbox: str) -> str:
    """Quote a mailbox name for SELECT if it contains spaces or quotes."""
    if re.search(r'[\s"()\\]', mailbox):
        escaped = mailbox.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return mailbox


def connect_server(
    server: str,
    user: str,
    password: str,
    mailbox: str | None = None,
) -> IMAPServer:
    """Open and authenticate a connection, optionally selecting mailbox."""
    host, port = parse_server(server)
    client = IMAPServer(host, port)
    try:
        client.connect(user, password, mailbox)
    except BaseException:
        client.disconnect()
        raise
    return client
