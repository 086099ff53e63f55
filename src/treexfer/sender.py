from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .constants import ACK, DEFAULT_CHUNK_SIZE, HASH_PREHASH, HASH_TEE
from .errors import SessionError
from .receiver import TransferMetrics
from .walk import iter_files
from .wire import encode_control_line, file_line, md5_line, send_control_line, size_line

logger = logging.getLogger(__name__)


def _md5_stream(f: BinaryIO, chunk_size: int) -> str:
    h = hashlib.md5(usedforsecurity=False)
    for chunk in iter(lambda: f.read(chunk_size), b""):
        h.update(chunk)
    return h.hexdigest()


def stream_file(
    out: BinaryIO,
    path: Union[str, os.PathLike],
    relative_path: str,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    hash_mode: str = HASH_PREHASH,
) -> Optional[int]:
    """Write one FILE/SIZE/payload/MD5 record for `path`.

    Returns the payload size, or None when the file could not be read
    before anything was written, or when its name cannot be carried on a
    control line (the record is skipped). In prehash mode the digest comes
    from a first read of the file and the payload from a second one, so a
    file modified in between is sent with a stale digest and fails
    verification on the far side. Tee mode hashes the bytes as they are
    written instead.
    """
    try:
        header = encode_control_line(file_line(relative_path))
    except (UnicodeEncodeError, ValueError) as exc:
        logger.error("Cannot send file name %r: %s", relative_path, exc)
        return None

    try:
        f = open(path, "rb")
    except OSError as exc:
        logger.error("Error opening file %s: %s", path, exc)
        return None

    with f:
        try:
            size = os.fstat(f.fileno()).st_size
            digest = None
            if hash_mode != HASH_TEE:
                digest = _md5_stream(f, chunk_size)
                f.seek(0)
        except OSError as exc:
            logger.error("Error calculating MD5 hash of %s: %s", path, exc)
            return None

        out.write(header)
        send_control_line(out, size_line(size))

        # the header is on the wire: from here a failure cannot be skipped
        h = hashlib.md5(usedforsecurity=False)
        sent = 0
        while sent < size:
            try:
                chunk = f.read(min(chunk_size, size - sent))
            except OSError as exc:
                raise SessionError(f"error reading {path} after its header was sent: {exc}") from exc
            if not chunk:
                break
            out.write(chunk)
            h.update(chunk)
            sent += len(chunk)
        if sent != size:
            raise SessionError(f"{path} shrank while sending: {sent} of {size} bytes")

        send_control_line(out, md5_line(digest if digest is not None else h.hexdigest()))

    logger.info("Sent file: %s", relative_path)
    return size


@dataclass(slots=True)
class TreeSender:
    out: BinaryIO
    source_root: Path
    chunk_size: int = DEFAULT_CHUNK_SIZE
    hash_mode: str = HASH_PREHASH

    def run(self) -> TransferMetrics:
        metrics = TransferMetrics()

        send_control_line(self.out, ACK)
        # a WalkError escapes here and the closing ACK is never sent
        for source in iter_files(self.source_root):
            size = stream_file(
                self.out,
                source.path,
                source.relative_path,
                chunk_size=self.chunk_size,
                hash_mode=self.hash_mode,
            )
            if size is None:
                metrics.failures += 1
                continue
            metrics.files += 1
            metrics.bytes_transferred += size
        send_control_line(self.out, ACK)
        self.out.flush()

        metrics.end_ts = time.monotonic()
        return metrics
