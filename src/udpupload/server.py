from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, cast

from .constants import (
    ACK,
    DEFAULT_MAX_PENDING,
    DEFAULT_MAX_WORKERS,
    DEFAULT_POLL_INTERVAL_MS,
    MAX_DATAGRAM_SIZE,
)
from .naming import create_unique_artifact
from .net import Address, Endpoint, format_address
from .packet import Datagram, DatagramKind, ProtocolError
from .registry import SessionRegistry
from .session import Phase, TransferSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ServerConfig:
    out_dir: Path = field(default_factory=Path.cwd)
    max_workers: int = DEFAULT_MAX_WORKERS
    max_pending: int = DEFAULT_MAX_PENDING
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    idle_timeout_s: Optional[float] = None


@dataclass(slots=True)
class ServerStats:
    datagrams: int = 0
    sessions_started: int = 0
    sessions_completed: int = 0
    sessions_replaced: int = 0
    sessions_abandoned: int = 0
    duplicate_headers: int = 0
    orphan_datagrams: int = 0
    refused_datagrams: int = 0
    rejected_datagrams: int = 0


class UploadServer:
    """Dispatch loop: the only reader of the endpoint and the only writer to the registry.

    Each datagram is classified and routed before the next one is read.
    Artifact writes happen on the session workers, never here.
    """

    def __init__(
        self,
        udp: Endpoint,
        registry: Optional[SessionRegistry[TransferSession]] = None,
        config: Optional[ServerConfig] = None,
    ):
        self.udp = udp
        self.registry: SessionRegistry[TransferSession] = registry if registry is not None else SessionRegistry()
        self.config = config or ServerConfig()
        self.stats = ServerStats()
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="session",
        )
        self._stop = threading.Event()
        self._last_sweep = time.monotonic()

    def serve_forever(self) -> None:
        """Run until shutdown() is called; socket errors other than timeouts propagate."""
        self.udp.settimeout(self.config.poll_interval_ms)
        logger.info("server ready; writing artifacts to %s", self.config.out_dir)
        try:
            while not self._stop.is_set():
                try:
                    raw, addr = self.udp.recvfrom(MAX_DATAGRAM_SIZE)
                except TimeoutError:
                    pass
                else:
                    self.handle(raw, addr)
                self._maybe_sweep()
        finally:
            self.close()

    def shutdown(self) -> None:
        self._stop.set()

    def close(self) -> None:
        """Close every registered session and wait for the workers to drain."""
        for identity, session in self.registry.snapshot():
            self.registry.remove(identity)
            session.close()
        self._pool.shutdown(wait=True)
        logger.info("server stopped; %s", self.stats)

    def handle(self, raw: bytes, addr: Address) -> None:
        self.stats.datagrams += 1
        try:
            dgram = Datagram.parse(raw)
        except ProtocolError as exc:
            self.stats.rejected_datagrams += 1
            logger.warning("rejected header from %s: %s", format_address(addr), exc)
            return

        if dgram.kind is DatagramKind.START:
            self._on_start(addr, cast(str, dgram.filename))
        elif dgram.kind is DatagramKind.END:
            self._on_end(addr)
        else:
            self._on_data(addr, dgram.payload)

    def sweep_idle(self, now: Optional[float] = None) -> int:
        """Abandon sessions that have been silent for longer than the idle timeout."""
        limit = self.config.idle_timeout_s
        if limit is None:
            return 0
        swept = 0
        for identity, session in self.registry.snapshot():
            if session.idle_for(now) <= limit:
                continue
            if self.registry.remove(identity) is not session:
                continue
            session.abandon()
            swept += 1
            self.stats.sessions_abandoned += 1
            logger.warning(
                "abandoned idle session %s after %.1fs; discarding %s",
                format_address(identity),
                session.idle_for(now),
                session.path.name,
            )
        return swept

    def _on_start(self, addr: Address, filename: str) -> None:
        current = self.registry.lookup(addr)
        if (
            current is not None
            and current.requested_name == filename
            and current.buffers_accepted == 0
            and current.phase is Phase.OPEN
        ):
            # retransmitted header: the first ack was lost
            self.stats.duplicate_headers += 1
            logger.debug("repeated header from %s; re-acknowledging", format_address(addr))
            self._ack(addr)
            return

        try:
            path, out = create_unique_artifact(self.config.out_dir, filename)
        except (OSError, ValueError) as exc:
            logger.error("cannot create artifact for %s from %s: %s", filename, format_address(addr), exc)
            return

        session = TransferSession(addr, filename, path, out, max_pending=self.config.max_pending)
        previous = self.registry.insert(addr, session)
        if previous is not None:
            previous.close()
            self.stats.sessions_replaced += 1
            logger.warning(
                "new session from %s replaces unfinished %s",
                format_address(addr),
                previous.path.name,
            )

        future = self._pool.submit(session.run)
        future.add_done_callback(_log_worker_error)
        self.stats.sessions_started += 1
        self._ack(addr)
        logger.info("started session for %s; saving as '%s'", format_address(addr), path.name)

    def _on_end(self, addr: Address) -> None:
        session = self.registry.remove(addr)
        if session is not None:
            session.close()
            self.stats.sessions_completed += 1
            logger.info(
                "completed transfer from %s; %d buffers queued for %s",
                format_address(addr),
                session.buffers_accepted,
                session.path.name,
            )
        self._ack(addr)

    def _on_data(self, addr: Address, payload: bytes) -> None:
        session = self.registry.lookup(addr)
        if session is None:
            self.stats.orphan_datagrams += 1
            logger.warning("data without active session from %s; dropped", format_address(addr))
            return
        if not session.offer(payload):
            self.stats.refused_datagrams += 1
            logger.debug("session %s refused %d bytes", format_address(addr), len(payload))
            return
        self._ack(addr)

    def _ack(self, addr: Address) -> None:
        self.udp.sendto(ACK, addr)

    def _maybe_sweep(self) -> None:
        now = time.monotonic()
        if (now - self._last_sweep) * 1000.0 >= self.config.poll_interval_ms:
            self._last_sweep = now
            self.sweep_idle(now)


def _log_worker_error(future: concurrent.futures.Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("session worker crashed: %r", exc)
