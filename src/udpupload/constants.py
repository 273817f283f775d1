from __future__ import annotations

MAX_DATAGRAM_SIZE = 1024  # payload bytes per datagram, both directions

HEADER_FILENAME = b"META:FILENAME:"
HEADER_END = b"META:END"
ACK = b"\x01"

DEFAULT_TIMEOUT_MS = 2000
DEFAULT_MAX_RETRIES = 5

DEFAULT_MAX_WORKERS = 8
DEFAULT_MAX_PENDING = 4096  # queued buffers per session
DEFAULT_POLL_INTERVAL_MS = 1000

MIN_PORT = 1024
MAX_PORT = 65535
