from __future__ import annotations

import enum
import hashlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional

from .constants import DEFAULT_CHUNK_SIZE
from .errors import IncompleteSessionError, ProtocolError, SessionError, UnsafePathError
from .wire import ControlKind, ControlLine, LineReader, parse_md5, parse_size, safe_destination

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransferMetrics:
    files: int = 0
    bytes_transferred: int = 0
    failures: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_transferred * 8 / 1_000_000) / self.duration_s


class ParserState(enum.Enum):
    AWAIT_SESSION_START = "await-session-start"
    AWAIT_RECORD_OR_END = "await-record-or-end"
    AWAIT_SIZE = "await-size"
    AWAIT_PAYLOAD = "await-payload"
    AWAIT_CHECKSUM = "await-checksum"
    SESSION_COMPLETE = "session-complete"


class RecordStatus(enum.Enum):
    VERIFIED = "verified"
    CHECKSUM_MISMATCH = "checksum-mismatch"
    SIZE_MISMATCH = "size-mismatch"
    FAILED = "failed"


@dataclass(slots=True)
class RecordResult:
    relative_path: str
    declared_size: int = 0
    received_bytes: int = 0
    computed_md5: str = ""
    expected_md5: Optional[str] = None
    destination: Optional[Path] = None
    error: Optional[str] = None

    @property
    def status(self) -> RecordStatus:
        if self.error is not None or self.expected_md5 is None:
            return RecordStatus.FAILED
        if self.received_bytes != self.declared_size:
            return RecordStatus.SIZE_MISMATCH
        if self.expected_md5 != self.computed_md5:
            return RecordStatus.CHECKSUM_MISMATCH
        return RecordStatus.VERIFIED

    @property
    def verified(self) -> bool:
        return self.status is RecordStatus.VERIFIED


@dataclass(slots=True)
class SessionReport:
    records: List[RecordResult] = field(default_factory=list)
    completed: bool = False
    metrics: TransferMetrics = field(default_factory=TransferMetrics)

    @property
    def verified(self) -> List[RecordResult]:
        return [r for r in self.records if r.verified]

    @property
    def failed(self) -> List[RecordResult]:
        return [r for r in self.records if not r.verified]

    @property
    def ok(self) -> bool:
        return self.completed and not self.failed


class _FileSink:
    """Writes payload chunks to the destination until a write fails, then
    keeps accepting chunks so the payload is still drained."""

    def __init__(self, f: BinaryIO, record: RecordResult):
        self.f = f
        self.record = record

    def __call__(self, chunk: bytes) -> None:
        if self.record.error is not None:
            return
        try:
            self.f.write(chunk)
        except OSError as exc:
            self.record.error = f"write failed: {exc}"
            logger.error("Error writing %s: %s", self.record.relative_path, exc)


@dataclass(slots=True)
class TreeReceiver:
    """Drains one session from `reader` into `dest_root`.

    In strict mode a missing or malformed SIZE/MD5 line and an EOF before
    the closing ACK end the session with a SessionError. Lenient mode keeps
    the legacy behavior: such lines are discarded and EOF counts as the end
    of the session. Either way, an unrecognised line between records is
    logged and skipped.
    """

    reader: LineReader
    dest_root: Path
    strict: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE
    state: ParserState = ParserState.AWAIT_SESSION_START
    report: SessionReport = field(default_factory=SessionReport)
    _record: Optional[RecordResult] = None

    def run(self) -> SessionReport:
        handlers: Dict[ParserState, Callable[[], ParserState]] = {
            ParserState.AWAIT_SESSION_START: self._on_session_start,
            ParserState.AWAIT_RECORD_OR_END: self._on_record_or_end,
            ParserState.AWAIT_SIZE: self._on_size,
            ParserState.AWAIT_PAYLOAD: self._on_payload,
            ParserState.AWAIT_CHECKSUM: self._on_checksum,
        }
        try:
            while self.state is not ParserState.SESSION_COMPLETE:
                self.state = handlers[self.state]()
        except SessionError as exc:
            exc.report = self.report
            raise
        finally:
            self.report.metrics.end_ts = time.monotonic()
        return self.report

    def _on_session_start(self) -> ParserState:
        line = self.reader.read_control()
        if line is None:
            raise SessionError("connection closed before the opening ACK")
        if line.kind is not ControlKind.ACK:
            raise SessionError(f"expected opening ACK, got {line.raw!r}")
        logger.debug("session opened")
        return ParserState.AWAIT_RECORD_OR_END

    def _on_record_or_end(self) -> ParserState:
        line = self.reader.read_control()
        if line is None:
            return self._end_of_stream("before the closing ACK")
        if line.kind is ControlKind.ACK:
            self.report.completed = True
            logger.info("Received final ACK. Transfer complete.")
            return ParserState.SESSION_COMPLETE
        if line.kind is ControlKind.FILE:
            self._record = RecordResult(relative_path=line.value)
            return ParserState.AWAIT_SIZE
        logger.warning("Invalid file info received: %s", line.raw)
        return ParserState.AWAIT_RECORD_OR_END

    def _on_size(self) -> ParserState:
        record = self._current()
        line = self.reader.read_control()
        if line is None:
            self._finish(record, error="stream ended before SIZE")
            return self._end_of_stream(f"while waiting for the size of {record.relative_path}")
        try:
            record.declared_size = self._expect(line, ControlKind.SIZE, parse_size)
        except ProtocolError as exc:
            return self._malformed(record, exc)
        return ParserState.AWAIT_PAYLOAD

    def _on_payload(self) -> ParserState:
        record = self._current()
        hasher = hashlib.md5(usedforsecurity=False)
        out: Optional[BinaryIO] = None
        try:
            dest = safe_destination(self.dest_root, record.relative_path)
            dest.parent.mkdir(parents=True, exist_ok=True)
            out = open(dest, "wb")
            record.destination = dest
        except UnsafePathError as exc:
            record.error = str(exc)
            logger.error("Rejected file %s: %s", record.relative_path, exc)
        except OSError as exc:
            record.error = f"cannot create file: {exc}"
            logger.error("Error creating file %s: %s", record.relative_path, exc)

        sinks: List[Callable[[bytes], object]] = [hasher.update]
        if out is not None:
            sinks.append(_FileSink(out, record))
        try:
            record.received_bytes = self.reader.copy_exact(
                record.declared_size, sinks, self.chunk_size
            )
        finally:
            if out is not None:
                out.close()

        record.computed_md5 = hasher.hexdigest()
        if record.received_bytes != record.declared_size:
            logger.warning(
                "Received %d bytes, expected %d bytes for %s",
                record.received_bytes,
                record.declared_size,
                record.relative_path,
            )
        return ParserState.AWAIT_CHECKSUM

    def _on_checksum(self) -> ParserState:
        record = self._current()
        line = self.reader.read_control()
        if line is None:
            self._finish(record)
            return self._end_of_stream(f"while waiting for the checksum of {record.relative_path}")
        try:
            record.expected_md5 = self._expect(line, ControlKind.MD5, parse_md5)
        except ProtocolError as exc:
            return self._malformed(record, exc)

        self._finish(record)
        status = record.status
        if status is RecordStatus.VERIFIED:
            logger.info("Received and verified file: %s", record.relative_path)
        elif status is RecordStatus.CHECKSUM_MISMATCH:
            logger.warning(
                "MD5 verification failed for %s. Received: %s, Calculated: %s",
                record.relative_path,
                record.expected_md5,
                record.computed_md5,
            )
        elif status is RecordStatus.SIZE_MISMATCH:
            logger.warning(
                "Byte count mismatch for %s: received %d of %d bytes",
                record.relative_path,
                record.received_bytes,
                record.declared_size,
            )
        return ParserState.AWAIT_RECORD_OR_END

    @staticmethod
    def _expect(line: ControlLine, kind: ControlKind, parse: Callable[[str], object]):
        if line.kind is not kind:
            raise ProtocolError(f"expected {kind.value} line, got {line.raw!r}")
        return parse(line.value)

    def _current(self) -> RecordResult:
        if self._record is None:
            raise SessionError(f"no record in progress in state {self.state.value}")
        return self._record

    def _finish(self, record: RecordResult, error: Optional[str] = None) -> None:
        if error is not None and record.error is None:
            record.error = error
        self.report.records.append(record)
        metrics = self.report.metrics
        metrics.bytes_transferred += record.received_bytes
        if record.verified:
            metrics.files += 1
        else:
            metrics.failures += 1
        self._record = None

    def _malformed(self, record: RecordResult, exc: ProtocolError) -> ParserState:
        self._finish(record, error=str(exc))
        if self.strict:
            raise exc
        logger.warning("%s; abandoning %s", exc, record.relative_path)
        return ParserState.AWAIT_RECORD_OR_END

    def _end_of_stream(self, where: str) -> ParserState:
        if self.strict:
            raise IncompleteSessionError(f"connection closed {where}")
        logger.warning("Connection closed %s; treating it as the end of the session", where)
        return ParserState.SESSION_COMPLETE
