from __future__ import annotations


class TransferError(Exception):
    """Base class for every error raised by treexfer."""


class ConnectionFailedError(TransferError):
    """Dial, listen or accept failed."""


class SessionError(TransferError):
    """The session framing is broken; nothing more can be parsed.

    `report` holds the records handled before the failure, when the
    receiver got that far.
    """

    report = None


class IncompleteSessionError(SessionError):
    """The stream closed before the closing ACK."""


class ProtocolError(SessionError):
    """A control line was missing or malformed where a token is mandatory."""


class UnsafePathError(TransferError):
    """A wire path would land outside the destination root."""


class WalkError(TransferError):
    """The source tree could not be enumerated."""
