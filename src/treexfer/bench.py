from __future__ import annotations

import os
import queue
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Tuple

from .config import TransferConfig
from .constants import DEFAULT_CHUNK_SIZE, HASH_PREHASH
from .errors import TransferError
from .receiver import SessionReport
from .session import receive_session, send_session


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    files: int
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float


def _make_tree(root: Path, files: int, file_size: int) -> None:
    for i in range(files):
        sub = root / f"d{i % 4}"
        sub.mkdir(exist_ok=True)
        (sub / f"f{i:04d}.bin").write_bytes(os.urandom(file_size))


def run_benchmark(
    *,
    files: int = 16,
    file_size: int = 1_000_000,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    hash_mode: str = HASH_PREHASH,
    join_timeout: float = 30.0,
) -> BenchmarkResult:
    with tempfile.TemporaryDirectory() as tmp:
        src = Path(tmp, "src")
        src.mkdir()
        _make_tree(src, files, file_size)

        config = TransferConfig(
            host="127.0.0.1",
            port=0,
            dest_root=Path(tmp, "dst"),
            chunk_size=chunk_size,
            hash_mode=hash_mode,
        )
        bound: "queue.Queue[Tuple[str, int]]" = queue.Queue()
        holder = {}

        def recv_runner() -> None:
            try:
                holder["report"] = receive_session(config, ready=bound.put)
            except TransferError as exc:
                holder["error"] = exc

        t = threading.Thread(target=recv_runner, daemon=True)
        t.start()

        host, port = bound.get(timeout=10.0)
        metrics = send_session(replace(config, host=host, port=port), src)
        t.join(timeout=join_timeout)
        if t.is_alive():
            raise TransferError(f"benchmark receiver did not finish within {join_timeout}s")

        if "error" in holder:
            raise holder["error"]
        report: SessionReport = holder["report"]
        if not report.ok or len(report.verified) != files:
            raise TransferError(f"benchmark transfer failed: {len(report.failed)} bad records")

    duration_s = max(0.001, metrics.duration_s)
    return BenchmarkResult(
        files=metrics.files,
        bytes_transferred=metrics.bytes_transferred,
        duration_s=duration_s,
        throughput_mbps=(metrics.bytes_transferred * 8 / 1_000_000) / duration_s,
    )
