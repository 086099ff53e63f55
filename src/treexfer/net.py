from __future__ import annotations

import socket
from typing import BinaryIO, Optional, Tuple

from .constants import DEFAULT_PORT
from .errors import ConnectionFailedError


def parse_address(address: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """Split `host:port`. An empty host means all interfaces, a missing
    port means `default_port`. IPv6 hosts must be bracketed."""
    address = address.strip()
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep:
            raise ValueError(f"unterminated IPv6 address: {address!r}")
        port_text = rest[1:] if rest.startswith(":") else rest
    elif address.count(":") == 1:
        host, _, port_text = address.partition(":")
    else:
        host, port_text = address, ""

    if not port_text:
        return host, default_port
    if not port_text.isdigit() or not 0 <= int(port_text) <= 65535:
        raise ValueError(f"invalid port: {port_text!r}")
    return host, int(port_text)


class TcpEndpoint:
    def __init__(self, sock: socket.socket, peer: Optional[Tuple[str, int]] = None):
        self.sock = sock
        self.peer = peer

    @classmethod
    def listening(cls, host: str, port: int, backlog: int = 1) -> "TcpEndpoint":
        try:
            infos = socket.getaddrinfo(
                host or "0.0.0.0", port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )
            family, socktype, proto, _, sockaddr = infos[0]
            sock = socket.socket(family, socktype, proto)
        except OSError as exc:
            raise ConnectionFailedError(f"cannot listen on {host}:{port}: {exc}") from exc
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            sock.listen(backlog)
        except OSError as exc:
            sock.close()
            raise ConnectionFailedError(f"cannot listen on {host}:{port}: {exc}") from exc
        return cls(sock)

    @classmethod
    def connect(cls, host: str, port: int, timeout: Optional[float] = None) -> "TcpEndpoint":
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise ConnectionFailedError(f"cannot connect to {host}:{port}: {exc}") from exc
        # the timeout only bounds the dial; transfers block
        sock.settimeout(None)
        return cls(sock, peer=(host, port))

    @property
    def address(self) -> Tuple[str, int]:
        return self.sock.getsockname()[:2]

    def accept(self) -> "TcpEndpoint":
        try:
            conn, addr = self.sock.accept()
        except OSError as exc:
            raise ConnectionFailedError(f"accept failed: {exc}") from exc
        return TcpEndpoint(conn, peer=addr[:2])

    def reader(self) -> BinaryIO:
        return self.sock.makefile("rb")

    def writer(self) -> BinaryIO:
        return self.sock.makefile("wb")

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "TcpEndpoint":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
