from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Optional

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_MS, MAX_DATAGRAM_SIZE
from .net import Address, Endpoint
from .packet import Datagram, DatagramKind, is_ack

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class TransferFailed(Exception):
    def __init__(self, kind: DatagramKind, attempts: int, bytes_sent: int):
        super().__init__(
            f"no acknowledgment for {kind.value} unit after {attempts} attempts; "
            f"{bytes_sent} bytes acknowledged so far"
        )
        self.kind = kind
        self.attempts = attempts
        self.bytes_sent = bytes_sent


@dataclass(slots=True)
class Metrics:
    packets_sent: int = 0
    bytes_sent: int = 0
    timeouts: int = 0
    retransmits: int = 0
    start_ts: float = field(default_factory=time.monotonic)
    end_ts: float | None = None

    @property
    def duration_s(self) -> float:
        if self.end_ts is None:
            return 0.0
        return max(0.0, self.end_ts - self.start_ts)

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_sent * 8 / 1_000_000) / self.duration_s


@dataclass(slots=True)
class ReliableSender:
    """Stop-and-wait uploader: header, chunks, end marker, one unit in flight."""

    udp: Endpoint
    dest: Address
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    chunk_size: int = MAX_DATAGRAM_SIZE
    progress: Optional[ProgressCallback] = None

    def send_file(self, path: str) -> Metrics:
        total = os.path.getsize(path)
        with open(path, "rb") as f:
            return self.send_stream(f, os.path.basename(path), total)

    def send_stream(self, f: BinaryIO, name: str, total_bytes: int) -> Metrics:
        """Upload everything readable from ``f`` under ``name``.

        Raises TransferFailed when any unit exhausts its attempts.
        """
        metrics = Metrics()
        header = Datagram.start(name).to_bytes()

        logger.info("upload start; name=%s size=%d dest=%s:%d", name, total_bytes, *self.dest)
        self._deliver(header, DatagramKind.START, metrics)

        while True:
            chunk = f.read(self.chunk_size)
            if not chunk:
                break
            self._deliver(Datagram.data(chunk).to_bytes(), DatagramKind.DATA, metrics)
            metrics.bytes_sent += len(chunk)
            self._report(metrics.bytes_sent, total_bytes)

        if metrics.bytes_sent == 0:
            self._report(0, total_bytes)

        self._deliver(Datagram.end().to_bytes(), DatagramKind.END, metrics)

        metrics.end_ts = time.monotonic()
        logger.info(
            "upload done; total bytes=%d retransmits=%d throughput=%.2f Mbps",
            metrics.bytes_sent,
            metrics.retransmits,
            metrics.throughput_mbps,
        )
        return metrics

    def _deliver(self, raw: bytes, kind: DatagramKind, metrics: Metrics) -> None:
        for attempt in range(1, self.max_retries + 1):
            if attempt > 1:
                metrics.retransmits += 1
            metrics.packets_sent += 1
            self.udp.sendto(raw, self.dest)
            if self._wait_for_ack():
                return
            metrics.timeouts += 1
            logger.debug("timeout; unit=%s attempt=%d/%d", kind.value, attempt, self.max_retries)

        metrics.end_ts = time.monotonic()
        raise TransferFailed(kind, self.max_retries, metrics.bytes_sent)

    def _wait_for_ack(self) -> bool:
        deadline = time.monotonic() + self.timeout_ms / 1000.0
        while True:
            remaining_ms = (deadline - time.monotonic()) * 1000.0
            if remaining_ms <= 0:
                return False
            self.udp.settimeout(remaining_ms)
            try:
                raw, _ = self.udp.recvfrom(MAX_DATAGRAM_SIZE)
            except TimeoutError:
                return False
            if is_ack(raw):
                return True
            logger.debug("ignoring %d-byte datagram while waiting for ack", len(raw))

    def _report(self, sent: int, total: int) -> None:
        pct = 100.0 if total <= 0 else sent * 100.0 / total
        logger.debug("sent %d bytes (%.2f%%)", sent, pct)
        if self.progress is not None:
            self.progress(sent, total)
