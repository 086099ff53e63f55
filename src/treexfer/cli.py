from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Optional

from .bench import run_benchmark
from .config import TransferConfig
from .constants import DEFAULT_CHUNK_SIZE, DEFAULT_DEST_DIR, DEFAULT_PORT, HASH_MODES, HASH_PREHASH
from .errors import SessionError, TransferError
from .receiver import SessionReport
from .session import receive_session, send_session

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_UNVERIFIED = 2


def prompt(text: str, ask: Callable[[str], str] = input) -> str:
    try:
        return ask(text).strip()
    except EOFError:
        return ""


def log_records(report: SessionReport) -> None:
    for record in report.verified:
        logger.info("verified: %s", record.relative_path)
    for record in report.failed:
        logger.warning("%s: %s", record.relative_path, record.error or record.status.value)


def cmd_send(args: argparse.Namespace, ask: Callable[[str], str] = input) -> int:
    print("Share Files")
    folder = args.folder or prompt("Enter folder path: ", ask)
    host = args.host or prompt("Enter receiver IP: ", ask)
    port_text = str(args.port) if args.port is not None else prompt(
        f"Enter receiver port (default {DEFAULT_PORT}): ", ask
    )
    if not folder or not host:
        logger.error("A folder path and a receiver IP are required")
        return EXIT_ERROR
    if port_text and not port_text.isdigit():
        logger.error("Invalid port: %s", port_text)
        return EXIT_ERROR

    config = TransferConfig(
        host=host,
        port=int(port_text) if port_text else DEFAULT_PORT,
        chunk_size=args.chunk_size,
        hash_mode=args.hash_mode,
        connect_timeout=args.connect_timeout,
    )
    metrics = send_session(config, folder)

    payload = {
        "role": "sender",
        "files": metrics.files,
        "skipped": metrics.failures,
        "bytes": metrics.bytes_transferred,
        "seconds": metrics.duration_s,
        "mbps": metrics.throughput_mbps,
    }
    print(json.dumps(payload, indent=2) if args.json else payload)
    return EXIT_OK


def cmd_receive(args: argparse.Namespace) -> int:
    print("File Receiver Program")
    config = TransferConfig(
        dest_root=Path(args.dest),
        chunk_size=args.chunk_size,
        strict=not args.lenient,
    ).with_address(args.address)
    try:
        report = receive_session(config)
    except SessionError as exc:
        if exc.report is not None:
            log_records(exc.report)
        raise

    log_records(report)

    payload = {
        "role": "receiver",
        "completed": report.completed,
        "verified": len(report.verified),
        "failed": len(report.failed),
        "bytes": report.metrics.bytes_transferred,
        "seconds": report.metrics.duration_s,
        "mbps": report.metrics.throughput_mbps,
    }
    print(json.dumps(payload, indent=2) if args.json else payload)
    return EXIT_OK if report.ok else EXIT_UNVERIFIED


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        files=args.files,
        file_size=args.file_size,
        chunk_size=args.chunk_size,
        hash_mode=args.hash_mode,
    )
    payload = {"role": "bench", **asdict(r)}
    print(json.dumps(payload, indent=2) if args.json else payload)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="treexfer", description="Send a directory tree over one TCP connection."
    )
    p.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--chunk-size", type=int, default=DEFAULT_CHUNK_SIZE)
        x.add_argument("--json", action="store_true")

    send = sub.add_parser("send", help="send a folder to a waiting receiver")
    add_common(send)
    send.add_argument("--folder", help="folder to send (prompted when omitted)")
    send.add_argument("--host", help="receiver IP (prompted when omitted)")
    send.add_argument("--port", type=int, help=f"receiver port (prompted, default {DEFAULT_PORT})")
    send.add_argument("--hash-mode", choices=HASH_MODES, default=HASH_PREHASH)
    send.add_argument("--connect-timeout", type=float, default=None)
    send.set_defaults(func=cmd_send)

    recv = sub.add_parser("receive", help="accept one sender and store its files")
    add_common(recv)
    recv.add_argument("address", nargs="?", default=":", help=f"[host][:port], default :{DEFAULT_PORT}")
    recv.add_argument("--dest", default=DEFAULT_DEST_DIR)
    recv.add_argument(
        "--lenient",
        action="store_true",
        help="skip malformed SIZE/MD5 lines and accept EOF as the end of the session",
    )
    recv.set_defaults(func=cmd_receive)

    bench = sub.add_parser("bench", help="loopback benchmark on a generated tree")
    add_common(bench)
    bench.add_argument("--files", type=int, default=16)
    bench.add_argument("--file-size", type=int, default=1_000_000)
    bench.add_argument("--hash-mode", choices=HASH_MODES, default=HASH_PREHASH)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s"
    )
    try:
        return int(args.func(args))
    except (TransferError, ValueError) as exc:
        logger.error("%s", exc)
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
