from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from .config import TransferConfig
from .errors import ConnectionFailedError, TransferError, WalkError
from .net import TcpEndpoint
from .receiver import SessionReport, TransferMetrics, TreeReceiver
from .sender import TreeSender
from .wire import LineReader

logger = logging.getLogger(__name__)


def receive_session(
    config: TransferConfig,
    ready: Optional[Callable[[Tuple[str, int]], None]] = None,
) -> SessionReport:
    """Accept exactly one sender and drain its session into
    `config.dest_root`. There is no accept loop: one call, one session.

    `ready` is called with the bound address once the socket listens,
    which is how callers learn the port when binding port 0.
    """
    dest = Path(config.dest_root)
    try:
        dest.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise TransferError(f"cannot create destination {dest}: {exc}") from exc

    with TcpEndpoint.listening(config.host, config.port) as listener:
        host, port = listener.address
        logger.info("Listening on address %s:%d. Waiting for sender...", host, port)
        if ready is not None:
            ready((host, port))

        with listener.accept() as conn:
            logger.info("Connected to sender: %s", conn.peer)
            with conn.reader() as stream:
                receiver = TreeReceiver(
                    LineReader(stream),
                    dest,
                    strict=config.strict,
                    chunk_size=config.chunk_size,
                )
                try:
                    report = receiver.run()
                except (ConnectionError, TimeoutError) as exc:
                    raise ConnectionFailedError(f"connection lost: {exc}") from exc

    logger.info(
        "File transfer completed: %d verified, %d failed",
        len(report.verified),
        len(report.failed),
    )
    return report


def send_session(config: TransferConfig, source_root: Union[str, os.PathLike]) -> TransferMetrics:
    root = Path(source_root)
    if not root.is_dir():
        raise WalkError(f"not a directory: {root}")

    with TcpEndpoint.connect(config.host, config.port, timeout=config.connect_timeout) as conn:
        logger.info("Connected to receiver: %s:%d", config.host, config.port)
        try:
            with conn.writer() as out:
                metrics = TreeSender(
                    out,
                    root,
                    chunk_size=config.chunk_size,
                    hash_mode=config.hash_mode,
                ).run()
        except (ConnectionError, TimeoutError) as exc:
            raise ConnectionFailedError(f"connection lost: {exc}") from exc

    logger.info(
        "File transfer completed: %d sent, %d skipped, %d bytes",
        metrics.files,
        metrics.failures,
        metrics.bytes_transferred,
    )
    return metrics
