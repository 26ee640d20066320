"""Exception types raised by imapchive."""


class ImapchiveError(Exception):
    """Base class for imapchive errors."""


class MalformedFrameError(ImapchiveError):
    """A log frame could not be decoded."""


class TruncatedFrameError(MalformedFrameError):
    """The log ended in the middle of a frame."""


class IndexCorruptError(ImapchiveError):
    """The checkpoint index failed its digest or structure checks."""


class ServerError(ImapchiveError):
    """The IMAP server rejected a command or returned something unparseable."""


class ConfigError(ImapchiveError):
    """Invalid configuration file."""
