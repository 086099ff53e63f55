from __future__ import annotations

import hashlib
import io
import logging

import pytest

from treexfer.errors import IncompleteSessionError, ProtocolError, SessionError
from treexfer.receiver import ParserState, RecordStatus, TreeReceiver
from treexfer.wire import LineReader

ABC_MD5 = "900150983cd24fb0d6963f7d28e17f72"
ABD_MD5 = hashlib.md5(b"abd").hexdigest()


def record(path: str, payload: bytes, digest: str | None = None) -> bytes:
    digest = digest or hashlib.md5(payload).hexdigest()
    return b"FILE:%s\nSIZE:%d\n%sMD5:%s\n" % (path.encode(), len(payload), payload, digest.encode())


def make_receiver(tmp_path, data: bytes, strict: bool = True) -> TreeReceiver:
    return TreeReceiver(LineReader(io.BytesIO(data)), tmp_path / "dst", strict=strict, chunk_size=4)


def receive(tmp_path, data: bytes, strict: bool = True):
    return make_receiver(tmp_path, data, strict).run()


def test_single_file_verified(tmp_path, caplog):
    caplog.set_level(logging.INFO)
    report = receive(tmp_path, b"ACK\n" + record("a.txt", b"abc") + b"ACK\n")

    assert report.completed and report.ok
    (r,) = report.records
    assert r.status is RecordStatus.VERIFIED
    assert r.computed_md5 == ABC_MD5
    assert (tmp_path / "dst" / "a.txt").read_bytes() == b"abc"
    assert "Received and verified file: a.txt" in caplog.text


def test_tampered_payload_reports_both_digests(tmp_path, caplog):
    report = receive(tmp_path, b"ACK\n" + record("a.txt", b"abd", ABC_MD5) + b"ACK\n")

    (r,) = report.records
    assert r.status is RecordStatus.CHECKSUM_MISMATCH
    assert (r.expected_md5, r.computed_md5) == (ABC_MD5, ABD_MD5)
    assert report.completed and not report.ok
    assert ABC_MD5 in caplog.text and ABD_MD5 in caplog.text
    # kept on disk as received
    assert (tmp_path / "dst" / "a.txt").read_bytes() == b"abd"


def test_uppercase_digest_is_accepted(tmp_path):
    report = receive(tmp_path, b"ACK\n" + record("a.txt", b"abc", ABC_MD5.upper()) + b"ACK\n")
    assert report.ok


def test_zero_file_session(tmp_path):
    receiver = make_receiver(tmp_path, b"ACK\nACK\n")
    report = receiver.run()
    assert report.completed
    assert report.records == []
    assert receiver.state is ParserState.SESSION_COMPLETE


def test_nested_paths_and_binary_payload(tmp_path):
    blob = b"ACK\nFILE:x\n\x00\xff" * 50
    data = b"ACK\n" + record("sub/dir/name.txt", b"hello") + record("bin/blob", blob) + b"ACK\n"
    report = receive(tmp_path, data)

    assert len(report.verified) == 2
    assert (tmp_path / "dst" / "sub" / "dir" / "name.txt").read_bytes() == b"hello"
    assert (tmp_path / "dst" / "bin" / "blob").read_bytes() == blob
    assert report.metrics.bytes_transferred == 5 + len(blob)


def test_empty_file(tmp_path):
    report = receive(tmp_path, b"ACK\n" + record("empty", b"") + b"ACK\n")
    assert report.ok
    assert (tmp_path / "dst" / "empty").read_bytes() == b""


@pytest.mark.parametrize("data", [b"", b"HELLO\n", b"FILE:a.txt\n"])
def test_missing_opening_ack_is_fatal(tmp_path, data):
    with pytest.raises(SessionError):
        receive(tmp_path, data)
    assert not (tmp_path / "dst").exists()


def test_invalid_line_between_records_is_skipped(tmp_path, caplog):
    data = b"ACK\nGARBAGE\n" + record("a.txt", b"abc") + b"ACK\n"
    report = receive(tmp_path, data)
    assert report.ok and len(report.verified) == 1
    assert "Invalid file info received: GARBAGE" in caplog.text


def test_eof_without_closing_ack_strict(tmp_path):
    receiver = make_receiver(tmp_path, b"ACK\n" + record("a.txt", b"abc"))
    with pytest.raises(IncompleteSessionError):
        receiver.run()
    assert len(receiver.report.verified) == 1


def test_eof_without_closing_ack_lenient(tmp_path):
    report = receive(tmp_path, b"ACK\n" + record("a.txt", b"abc"), strict=False)
    assert not report.completed
    assert len(report.verified) == 1
    assert not report.ok


def test_bad_size_strict_is_fatal(tmp_path):
    with pytest.raises(ProtocolError):
        receive(tmp_path, b"ACK\nFILE:a.txt\nSIZE:abc\n")


def test_bad_size_lenient_abandons_record(tmp_path):
    data = b"ACK\nFILE:a.txt\nSIZE:-3\n" + record("b.txt", b"abc") + b"ACK\n"
    report = receive(tmp_path, data, strict=False)

    assert report.completed
    assert [r.relative_path for r in report.failed] == ["a.txt"]
    assert [r.relative_path for r in report.verified] == ["b.txt"]
    assert not (tmp_path / "dst" / "a.txt").exists()


def test_missing_md5_strict_is_fatal(tmp_path):
    with pytest.raises(ProtocolError):
        receive(tmp_path, b"ACK\nFILE:a.txt\nSIZE:3\nabcSHA:xyz\nACK\n")


def test_missing_md5_lenient_keeps_file_unverified(tmp_path):
    report = receive(tmp_path, b"ACK\nFILE:a.txt\nSIZE:3\nabcSHA:xyz\nACK\n", strict=False)
    (r,) = report.records
    assert r.status is RecordStatus.FAILED
    assert report.completed
    assert (tmp_path / "dst" / "a.txt").read_bytes() == b"abc"


def test_short_payload_lenient(tmp_path, caplog):
    report = receive(tmp_path, b"ACK\nFILE:a.txt\nSIZE:10\nabc", strict=False)
    (r,) = report.records
    assert r.received_bytes == 3
    assert r.status is RecordStatus.FAILED
    assert "Received 3 bytes, expected 10 bytes" in caplog.text


def test_short_payload_strict(tmp_path):
    receiver = make_receiver(tmp_path, b"ACK\nFILE:a.txt\nSIZE:10\nabc")
    with pytest.raises(IncompleteSessionError):
        receiver.run()
    (r,) = receiver.report.records
    assert (r.received_bytes, r.declared_size) == (3, 10)


def test_traversal_is_rejected_but_stream_stays_in_step(tmp_path):
    data = b"ACK\n" + record("../evil.txt", b"abc") + record("ok.txt", b"ok") + b"ACK\n"
    report = receive(tmp_path, data)

    assert report.completed
    assert [r.relative_path for r in report.failed] == ["../evil.txt"]
    assert [r.relative_path for r in report.verified] == ["ok.txt"]
    assert not (tmp_path / "evil.txt").exists()
    assert (tmp_path / "dst" / "ok.txt").read_bytes() == b"ok"


def test_uncreatable_destination_is_drained(tmp_path):
    dst = tmp_path / "dst"
    dst.mkdir()
    (dst / "blocker").write_text("a file where a directory is needed")
    data = b"ACK\n" + record("blocker/a.txt", b"abc") + record("b.txt", b"b") + b"ACK\n"

    report = receive(tmp_path, data)

    assert [r.relative_path for r in report.failed] == ["blocker/a.txt"]
    assert report.failed[0].error.startswith("cannot create file")
    assert [r.relative_path for r in report.verified] == ["b.txt"]


def test_trailing_space_in_name_is_kept(tmp_path):
    report = receive(tmp_path, b"ACK\n" + record("d/name ", b"abc") + b"ACK\n")
    assert report.ok
    assert (tmp_path / "dst" / "d" / "name ").read_bytes() == b"abc"
    assert not (tmp_path / "dst" / "d" / "name").exists()


def test_fatal_error_carries_partial_report(tmp_path):
    receiver = make_receiver(tmp_path, b"ACK\n" + record("a.txt", b"abc"))
    with pytest.raises(IncompleteSessionError) as excinfo:
        receiver.run()
    assert excinfo.value.report is receiver.report
    assert [r.relative_path for r in excinfo.value.report.verified] == ["a.txt"]
