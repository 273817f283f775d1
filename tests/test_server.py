from __future__ import annotations

import time

from udpupload.registry import SessionRegistry
from udpupload.server import ServerConfig, UploadServer
from udpupload.session import Phase

from conftest import ServerSide

A = ("10.0.0.1", 5000)
B = ("10.0.0.2", 5000)
ACK = b"\x01"


def acks_to(server, addr):
    return [data for data, to in server.udp.acks if to == addr]


def test_full_session_is_acknowledged_step_by_step(server, tmp_path):
    server.handle(b"META:FILENAME:a.txt", A)
    server.handle(b"hello ", A)
    server.handle(b"world", A)
    server.handle(b"META:END", A)
    server.close()

    assert acks_to(server, A) == [ACK] * 4
    assert (tmp_path / "a.txt").read_bytes() == b"hello world"
    assert len(server.registry) == 0


def test_orphan_data_dropped_without_ack(server, tmp_path):
    server.handle(b"stray bytes", A)
    server.close()

    assert server.udp.acks == []
    assert list(tmp_path.iterdir()) == []
    assert server.stats.orphan_datagrams == 1


def test_data_after_end_is_orphaned(server, tmp_path):
    server.handle(b"META:FILENAME:a.txt", A)
    server.handle(b"META:END", A)
    server.handle(b"late", A)
    server.close()

    assert acks_to(server, A) == [ACK, ACK]
    assert (tmp_path / "a.txt").read_bytes() == b""


def test_end_without_session_still_acknowledged(server):
    server.handle(b"META:END", A)
    assert acks_to(server, A) == [ACK]
    assert server.stats.sessions_completed == 0


def test_unusable_header_not_acknowledged(server, tmp_path):
    server.handle(b"META:FILENAME:..", A)
    assert server.udp.acks == []
    assert server.stats.rejected_datagrams == 1
    assert len(server.registry) == 0


def test_null_byte_in_name_rejected_and_server_keeps_serving(server, tmp_path):
    server.handle(b"META:FILENAME:a\x00b.txt", A)
    assert server.udp.acks == []
    assert server.stats.rejected_datagrams == 1

    server.handle(b"META:FILENAME:ok.txt", A)
    server.handle(b"fine", A)
    server.handle(b"META:END", A)
    server.close()

    assert acks_to(server, A) == [ACK] * 3
    assert (tmp_path / "ok.txt").read_bytes() == b"fine"


def test_artifact_creation_error_not_acknowledged(server, tmp_path):
    # open() refuses the name itself; the start is dropped without an ack
    server._on_start(A, "bad\x00name.txt")
    assert server.udp.acks == []
    assert A not in server.registry
    assert list(tmp_path.iterdir()) == []


def test_existing_name_gets_disambiguator(server, tmp_path):
    (tmp_path / "report.txt").write_bytes(b"keep me")
    server.handle(b"META:FILENAME:report.txt", A)
    server.handle(b"new", A)
    server.handle(b"META:END", A)
    server.close()

    assert (tmp_path / "report.txt").read_bytes() == b"keep me"
    assert (tmp_path / "report(1).txt").read_bytes() == b"new"


def test_interleaved_clients_do_not_mix(server, tmp_path):
    server.handle(b"META:FILENAME:same.bin", A)
    server.handle(b"META:FILENAME:same.bin", B)
    for i in range(20):
        server.handle(b"A%02d" % i, A)
        server.handle(b"B%02d" % i, B)
    server.handle(b"META:END", B)
    server.handle(b"META:END", A)
    server.close()

    first = (tmp_path / "same.bin").read_bytes()
    second = (tmp_path / "same(1).bin").read_bytes()
    assert first == b"".join(b"A%02d" % i for i in range(20))
    assert second == b"".join(b"B%02d" % i for i in range(20))


def test_new_start_drains_and_replaces_unfinished_session(server, tmp_path):
    server.handle(b"META:FILENAME:one.txt", A)
    server.handle(b"first upload", A)
    old = server.registry.lookup(A)
    server.handle(b"META:FILENAME:two.txt", A)
    server.handle(b"second upload", A)
    server.handle(b"META:END", A)
    server.close()

    assert old.phase is Phase.CLOSED
    assert server.stats.sessions_replaced == 1
    assert (tmp_path / "one.txt").read_bytes() == b"first upload"
    assert (tmp_path / "two.txt").read_bytes() == b"second upload"


def test_same_name_restart_after_data_is_a_new_session(server, tmp_path):
    server.handle(b"META:FILENAME:r.txt", A)
    server.handle(b"part", A)
    server.handle(b"META:FILENAME:r.txt", A)
    server.handle(b"whole", A)
    server.handle(b"META:END", A)
    server.close()

    assert server.stats.duplicate_headers == 0
    assert (tmp_path / "r.txt").read_bytes() == b"part"
    assert (tmp_path / "r(1).txt").read_bytes() == b"whole"


def test_idle_sessions_are_abandoned(tmp_path):
    srv = UploadServer(ServerSide(), config=ServerConfig(out_dir=tmp_path, idle_timeout_s=5.0))
    srv.handle(b"META:FILENAME:idle.bin", A)
    srv.handle(b"partial", A)
    session = srv.registry.lookup(A)

    assert srv.sweep_idle(time.monotonic()) == 0
    assert srv.sweep_idle(time.monotonic() + 10.0) == 1
    assert session.wait(5.0)
    srv.close()

    assert A not in srv.registry
    assert session.phase is Phase.ABANDONED
    assert not (tmp_path / "idle.bin").exists()
    srv.handle(b"more", A)
    assert srv.stats.orphan_datagrams == 1


def test_idle_sweep_disabled_by_default(server):
    server.handle(b"META:FILENAME:x.bin", A)
    assert server.sweep_idle(time.monotonic() + 1e6) == 0
    assert A in server.registry


class RefusingSession:
    requested_name = "r.bin"
    buffers_accepted = 1
    phase = Phase.FAILED

    def offer(self, data):
        return False

    def close(self):
        pass


def test_refused_buffer_not_acknowledged(tmp_path):
    registry = SessionRegistry()
    registry.insert(A, RefusingSession())
    srv = UploadServer(ServerSide(), registry=registry, config=ServerConfig(out_dir=tmp_path))

    srv.handle(b"data", A)
    assert srv.udp.acks == []
    assert srv.stats.refused_datagrams == 1
    srv.close()
