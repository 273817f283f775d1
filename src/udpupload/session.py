from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .constants import DEFAULT_MAX_PENDING
from .net import Address, format_address

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class _CloseSignal:
    pass


_CLOSE = _CloseSignal()


class TransferSession:
    """One client's upload: an ordered buffer queue drained to one artifact.

    ``offer``, ``close`` and ``abandon`` are called from the dispatch loop;
    ``run`` is the worker body and is the only code touching the artifact
    handle and the byte counter.
    """

    def __init__(
        self,
        identity: Address,
        requested_name: str,
        path: Path,
        out: BinaryIO,
        max_pending: int = DEFAULT_MAX_PENDING,
    ):
        self.identity = identity
        self.requested_name = requested_name
        self.path = path
        self.max_pending = max_pending
        self.total_bytes = 0
        self.buffers_accepted = 0
        self.last_activity = time.monotonic()

        self._out = out
        self._queue: "queue.Queue[Union[bytes, _CloseSignal]]" = queue.Queue()
        self._lock = threading.Lock()
        self._phase = Phase.OPEN
        self._signalled = False
        self._abandoned = threading.Event()
        self._done = threading.Event()

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def offer(self, data: bytes) -> bool:
        """Queue ``data`` for writing; False if the session cannot take it."""
        with self._lock:
            if self._phase is not Phase.OPEN:
                return False
            if self._queue.qsize() >= self.max_pending:
                logger.warning("session %s: pending queue full, refusing buffer", format_address(self.identity))
                return False
            self._queue.put(data)
        self.buffers_accepted += 1
        self.last_activity = time.monotonic()
        return True

    def close(self) -> None:
        """Stop accepting buffers; the worker drains what is queued, then releases the artifact."""
        with self._lock:
            if self._phase is Phase.OPEN:
                self._phase = Phase.CLOSING
            self._signal()

    def abandon(self) -> None:
        """Stop without writing queued buffers and delete the partial artifact."""
        with self._lock:
            if self._phase in (Phase.OPEN, Phase.CLOSING):
                self._abandoned.set()
                self._phase = Phase.CLOSING
            self._signal()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def idle_for(self, now: Optional[float] = None) -> float:
        return (time.monotonic() if now is None else now) - self.last_activity

    def run(self) -> None:
        final = Phase.CLOSED
        try:
            try:
                with self._out:
                    self._drain()
            except OSError as exc:
                final = Phase.FAILED
                logger.error("session %s: write to %s failed: %s", format_address(self.identity), self.path, exc)

            if self._abandoned.is_set():
                final = Phase.ABANDONED
                try:
                    self.path.unlink(missing_ok=True)
                except OSError as exc:
                    logger.error("session %s: could not remove %s: %s", format_address(self.identity), self.path, exc)
        finally:
            with self._lock:
                self._phase = final
            self._done.set()

        logger.info(
            "session %s %s; %s (%d bytes)",
            format_address(self.identity),
            final.value,
            self.path.name,
            self.total_bytes,
        )

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if isinstance(item, _CloseSignal) or self._abandoned.is_set():
                return
            self._out.write(item)
            self.total_bytes += len(item)

    def _signal(self) -> None:
        # caller holds self._lock
        if not self._signalled:
            self._signalled = True
            self._queue.put(_CLOSE)
