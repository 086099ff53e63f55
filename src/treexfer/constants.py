from __future__ import annotations

ENCODING = "utf-8"

ACK = "ACK"
FILE_PREFIX = "FILE:"
SIZE_PREFIX = "SIZE:"
MD5_PREFIX = "MD5:"

MD5_HEX_LEN = 32
MAX_LINE_BYTES = 8192  # longest control line accepted, terminator included

DEFAULT_PORT = 8080
DEFAULT_CHUNK_SIZE = 1024
DEFAULT_DEST_DIR = "Shared"

HASH_PREHASH = "prehash"
HASH_TEE = "tee"
HASH_MODES = (HASH_PREHASH, HASH_TEE)
