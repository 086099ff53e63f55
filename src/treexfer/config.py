from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from .constants import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_DEST_DIR,
    DEFAULT_PORT,
    HASH_MODES,
    HASH_PREHASH,
)
from .net import parse_address


@dataclass(frozen=True, slots=True)
class TransferConfig:
    host: str = ""
    port: int = DEFAULT_PORT
    dest_root: Path = Path(DEFAULT_DEST_DIR)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    strict: bool = True
    hash_mode: str = HASH_PREHASH
    connect_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk size must be positive, got {self.chunk_size}")
        if self.hash_mode not in HASH_MODES:
            raise ValueError(f"unknown hash mode {self.hash_mode!r}; expected one of {HASH_MODES}")

    def with_address(self, address: str) -> "TransferConfig":
        host, port = parse_address(address, default_port=self.port)
        return replace(self, host=host, port=port)
