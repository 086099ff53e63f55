from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import BinaryIO, Callable, Iterable, Optional

from .constants import (
    ACK,
    ENCODING,
    FILE_PREFIX,
    MAX_LINE_BYTES,
    MD5_HEX_LEN,
    MD5_PREFIX,
    SIZE_PREFIX,
)
from .errors import ProtocolError, UnsafePathError

logger = logging.getLogger(__name__)

_HEX_DIGITS = frozenset("0123456789abcdef")


class ControlKind(enum.Enum):
    ACK = "ACK"
    FILE = "FILE"
    SIZE = "SIZE"
    MD5 = "MD5"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class ControlLine:
    kind: ControlKind
    value: str = ""
    raw: str = ""

    @staticmethod
    def parse(raw: bytes) -> "ControlLine":
        # only the terminator is dropped; FILE values keep their spaces
        text = raw.decode(ENCODING, errors="replace").rstrip("\r\n")
        if text.strip() == ACK:
            return ControlLine(ControlKind.ACK, raw=text)
        for kind, prefix in (
            (ControlKind.FILE, FILE_PREFIX),
            (ControlKind.SIZE, SIZE_PREFIX),
            (ControlKind.MD5, MD5_PREFIX),
        ):
            if text.startswith(prefix):
                value = text[len(prefix) :]
                if kind is not ControlKind.FILE:
                    value = value.strip()
                return ControlLine(kind, value, raw=text)
        return ControlLine(ControlKind.UNKNOWN, raw=text)


def encode_control_line(text: str) -> bytes:
    if "\n" in text or "\r" in text:
        raise ValueError(f"control line must not contain line breaks: {text!r}")
    return (text + "\n").encode(ENCODING)


def send_control_line(out: BinaryIO, text: str) -> None:
    # one write per line keeps a control line contiguous on the stream
    out.write(encode_control_line(text))


def file_line(relative_path: str) -> str:
    return FILE_PREFIX + relative_path


def size_line(size: int) -> str:
    if size < 0:
        raise ValueError(f"size must be non-negative, got {size}")
    return f"{SIZE_PREFIX}{size}"


def md5_line(hexdigest: str) -> str:
    return MD5_PREFIX + hexdigest.lower()


def parse_size(value: str) -> int:
    if not value.isascii() or not value.isdigit():
        raise ProtocolError(f"invalid size: {value!r}")
    return int(value)


def parse_md5(value: str) -> str:
    digest = value.lower()
    if len(digest) != MD5_HEX_LEN or not set(digest) <= _HEX_DIGITS:
        raise ProtocolError(f"invalid md5 digest: {value!r}")
    return digest


class LineReader:
    """Reads `\\n` terminated control lines and length-delimited payloads
    from one buffered binary stream.

    Both kinds of read go through the same buffer, so payload bytes are
    never scanned for line breaks and control lines are never read as
    payload as long as the byte accounting is right.
    """

    def __init__(self, stream: BinaryIO, max_line: int = MAX_LINE_BYTES):
        self.stream = stream
        self.max_line = max_line

    def read_line(self) -> Optional[bytes]:
        raw = self.stream.readline(self.max_line)
        if not raw:
            return None
        if not raw.endswith(b"\n"):
            if len(raw) >= self.max_line:
                raise ProtocolError(f"control line exceeds {self.max_line} bytes")
            logger.debug("discarding unterminated line at EOF: %r", raw)
            return None
        return raw

    def read_control(self) -> Optional[ControlLine]:
        raw = self.read_line()
        if raw is None:
            return None
        line = ControlLine.parse(raw)
        logger.debug("<- %s", line.raw)
        return line

    def copy_exact(
        self,
        size: int,
        sinks: Iterable[Callable[[bytes], object]],
        chunk_size: int,
    ) -> int:
        sinks = list(sinks)
        remaining = size
        while remaining > 0:
            chunk = self.stream.read(min(chunk_size, remaining))
            if not chunk:
                break
            for sink in sinks:
                sink(chunk)
            remaining -= len(chunk)
        return size - remaining


def safe_destination(root: Path, relative_path: str) -> Path:
    if not relative_path or "\x00" in relative_path:
        raise UnsafePathError(f"invalid path: {relative_path!r}")

    posix = PurePosixPath(relative_path)
    windows = PureWindowsPath(relative_path)
    if posix.is_absolute() or windows.drive or windows.root:
        raise UnsafePathError(f"absolute path not allowed: {relative_path!r}")
    if ".." in posix.parts or ".." in windows.parts:
        raise UnsafePathError(f"parent reference not allowed: {relative_path!r}")

    parts = [p for p in posix.parts if p not in ("", ".")]
    if not parts:
        raise UnsafePathError(f"path names no file: {relative_path!r}")

    base = root.resolve()
    target = base.joinpath(*parts)
    try:
        target.resolve().relative_to(base)
    except ValueError:
        raise UnsafePathError(f"path escapes destination root: {relative_path!r}") from None
    return target
