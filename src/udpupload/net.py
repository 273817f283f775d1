from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass, field
from typing import Protocol, Tuple

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


class Endpoint(Protocol):
    def settimeout(self, timeout_ms: float) -> None: ...

    def sendto(self, data: bytes, addr: Address) -> None: ...

    def recvfrom(self, bufsize: int = ...) -> Tuple[bytes, Address]: ...


@dataclass(frozen=True, slots=True)
class Impairment:
    """Simulated network loss and delay, applied in both directions."""

    loss_rate: float = 0.0
    delay_ms: int = 0
    rng: random.Random = field(default_factory=random.Random, compare=False)

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and self.rng.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class UdpEndpoint:
    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def listening(
        cls,
        host: str,
        port: int,
        timeout_ms: int = 0,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        if timeout_ms > 0:
            sock.settimeout(timeout_ms / 1000.0)
        return cls(sock, impairment)

    @classmethod
    def sending(
        cls,
        timeout_ms: int = 0,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if timeout_ms > 0:
            sock.settimeout(timeout_ms / 1000.0)
        return cls(sock, impairment)

    @property
    def address(self) -> Address:
        return self.sock.getsockname()

    def settimeout(self, timeout_ms: float) -> None:
        # a zero timeout would switch the socket to non-blocking mode
        self.sock.settimeout(max(timeout_ms, 1.0) / 1000.0)

    def sendto(self, data: bytes, addr: Address) -> None:
        if self.impairment.should_drop():
            logger.debug("dropped outbound %d bytes to %s", len(data), addr)
            return
        self.impairment.sleep_if_needed()
        self.sock.sendto(data, addr)

    def recvfrom(self, bufsize: int = 65535) -> Tuple[bytes, Address]:
        """Receive one datagram; raises TimeoutError when the socket timeout expires."""
        while True:
            data, addr = self.sock.recvfrom(bufsize)
            if self.impairment.should_drop():
                logger.debug("dropped inbound %d bytes from %s", len(data), addr)
                continue
            self.impairment.sleep_if_needed()
            return data, addr

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UdpEndpoint":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def format_address(addr: Address) -> str:
    return f"{addr[0]}:{addr[1]}"
