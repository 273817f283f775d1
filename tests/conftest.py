from __future__ import annotations

from typing import Dict, List, Tuple

import pytest

from udpupload.server import ServerConfig, UploadServer

SERVER_ADDR = ("127.0.0.1", 9000)


class ServerSide:
    """Server endpoint whose acks are handed straight to the linked clients."""

    def __init__(self):
        self.acks: List[Tuple[bytes, Tuple[str, int]]] = []
        self.clients: Dict[Tuple[str, int], "ClientSide"] = {}

    def settimeout(self, timeout_ms):
        pass

    def sendto(self, data, addr):
        self.acks.append((data, addr))
        client = self.clients.get(addr)
        if client is not None:
            client.receive(data)

    def recvfrom(self, bufsize=65535):
        raise TimeoutError


class ClientSide:
    """Client endpoint that dispatches synchronously into an UploadServer.

    ``drop_sent`` holds indices of outbound datagrams lost before the server
    sees them; ``drop_acks`` holds indices of acks lost on the way back.
    """

    def __init__(self, server: UploadServer, identity, drop_sent=(), drop_acks=()):
        self.server = server
        self.identity = identity
        self.drop_sent = set(drop_sent)
        self.drop_acks = set(drop_acks)
        self.sent: List[bytes] = []
        self.inbox: List[bytes] = []
        self.acks_seen = 0
        server.udp.clients[identity] = self

    def settimeout(self, timeout_ms):
        pass

    def sendto(self, data, addr):
        index = len(self.sent)
        self.sent.append(data)
        if index not in self.drop_sent:
            self.server.handle(data, self.identity)

    def receive(self, data):
        index = self.acks_seen
        self.acks_seen += 1
        if index not in self.drop_acks:
            self.inbox.append(data)

    def recvfrom(self, bufsize=65535):
        if self.inbox:
            return self.inbox.pop(0), SERVER_ADDR
        raise TimeoutError


@pytest.fixture
def server(tmp_path):
    srv = UploadServer(ServerSide(), config=ServerConfig(out_dir=tmp_path))
    yield srv
    srv.close()


@pytest.fixture
def connect(server):
    def _connect(port=40000, **kwargs):
        return ClientSide(server, ("127.0.0.1", port), **kwargs)

    return _connect
