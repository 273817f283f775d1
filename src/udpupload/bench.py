from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_MAX_WORKERS
from .net import Impairment, UdpEndpoint
from .sender import Metrics, ReliableSender, TransferFailed
from .server import ServerConfig, UploadServer

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    clients: int
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    retransmits: int
    timeouts: int
    failed: int
    intact: int


def run_benchmark(
    *,
    clients: int = 4,
    size_bytes: int = 1_000_000,
    loss_rate: float = 0.0,
    delay_ms: int = 0,
    timeout_ms: int = 250,
    max_retries: int = DEFAULT_MAX_RETRIES,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> BenchmarkResult:
    """Upload ``clients`` same-named random files concurrently to a loopback server.

    ``intact`` counts artifacts byte-identical to one of the sources; with
    loss enabled a lost data ack makes the resent chunk land twice, so it
    can be lower than the number of successful uploads.
    """
    payloads = [os.urandom(size_bytes) for _ in range(clients)]
    impair = Impairment(loss_rate=loss_rate, delay_ms=delay_ms)

    with tempfile.TemporaryDirectory() as src_dir, tempfile.TemporaryDirectory() as out_dir:
        sources: List[Path] = []
        for i, payload in enumerate(payloads):
            client_dir = Path(src_dir) / f"client{i}"
            client_dir.mkdir()
            path = client_dir / "payload.bin"
            path.write_bytes(payload)
            sources.append(path)

        recv_ep = UdpEndpoint.listening("127.0.0.1", 0, impairment=impair)
        server = UploadServer(
            recv_ep,
            config=ServerConfig(out_dir=Path(out_dir), max_workers=max_workers, poll_interval_ms=100),
        )
        server_thread = threading.Thread(target=server.serve_forever, daemon=True)
        server_thread.start()

        results: List[Optional[Metrics]] = [None] * clients

        def client_runner(i: int) -> None:
            with UdpEndpoint.sending(impairment=impair) as ep:
                sender = ReliableSender(ep, recv_ep.address, timeout_ms=timeout_ms, max_retries=max_retries)
                try:
                    results[i] = sender.send_file(str(sources[i]))
                except TransferFailed as exc:
                    logger.warning("client %d failed: %s", i, exc)

        start = time.monotonic()
        threads = [threading.Thread(target=client_runner, args=(i,), daemon=True) for i in range(clients)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        duration_s = max(0.001, time.monotonic() - start)

        try:
            server.shutdown()
            server_thread.join(timeout=10.0)
        finally:
            recv_ep.close()

        digests = {hashlib.sha1(p).hexdigest() for p in payloads}
        intact = sum(
            1 for artifact in Path(out_dir).iterdir() if hashlib.sha1(artifact.read_bytes()).hexdigest() in digests
        )

    done = [m for m in results if m is not None]
    transferred = sum(m.bytes_sent for m in done)
    return BenchmarkResult(
        clients=clients,
        bytes_transferred=transferred,
        duration_s=duration_s,
        throughput_mbps=(transferred * 8 / 1_000_000) / duration_s,
        retransmits=sum(m.retransmits for m in done),
        timeouts=sum(m.timeouts for m in done),
        failed=clients - len(done),
        intact=intact,
    )
