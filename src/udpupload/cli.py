from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path

from .bench import run_benchmark
from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_TIMEOUT_MS,
    MAX_PORT,
    MIN_PORT,
)
from .net import Impairment, UdpEndpoint
from .sender import ReliableSender, TransferFailed
from .server import ServerConfig, UploadServer

logger = logging.getLogger(__name__)


def port_number(text: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: {text!r}") from None
    if not MIN_PORT <= port <= MAX_PORT:
        raise argparse.ArgumentTypeError(f"port must be between {MIN_PORT} and {MAX_PORT}, got {port}")
    return port


def cmd_serve(args: argparse.Namespace) -> int:
    out_dir = Path(args.out_dir)
    if not out_dir.is_dir():
        logger.error("output directory does not exist: %s", out_dir)
        return 1

    impair = Impairment(args.loss_rate, args.delay_ms)
    try:
        udp = UdpEndpoint.listening(args.listen_host, args.port, impairment=impair)
    except OSError as exc:
        logger.error("unsafe or unavailable port %d: %s", args.port, exc)
        return 1

    with udp:
        server = UploadServer(
            udp,
            config=ServerConfig(
                out_dir=out_dir,
                max_workers=args.max_workers,
                idle_timeout_s=args.idle_timeout,
            ),
        )
        logger.info("UDP server listening on port %d", args.port)
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            logger.info("interrupted; shutting down")

    payload = {"role": "server", **asdict(server.stats)}
    print(json.dumps(payload, indent=2) if args.json else payload)
    return 0


def cmd_send(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.is_file():
        logger.error("file not found or not a regular file: %s", args.file)
        return 1

    def show_progress(sent: int, total: int) -> None:
        pct = 100.0 if total <= 0 else sent * 100.0 / total
        print(f"Sent {sent} bytes ({pct:.2f}%)")

    impair = Impairment(args.loss_rate, args.delay_ms)
    with UdpEndpoint.sending(impairment=impair) as udp:
        sender = ReliableSender(
            udp,
            (args.host, args.port),
            timeout_ms=args.timeout_ms,
            max_retries=args.max_retries,
            progress=None if args.json else show_progress,
        )
        try:
            metrics = sender.send_file(str(path))
        except TransferFailed as exc:
            logger.error("transfer failed: %s", exc)
            return 1
        except OSError as exc:
            logger.error("cannot reach %s:%d: %s", args.host, args.port, exc)
            return 1

    if args.json:
        payload = {
            "role": "sender",
            "bytes": metrics.bytes_sent,
            "seconds": metrics.duration_s,
            "mbps": metrics.throughput_mbps,
            "timeouts": metrics.timeouts,
            "retransmits": metrics.retransmits,
        }
        print(json.dumps(payload, indent=2))
    else:
        print(f"File sent successfully! Total bytes: {metrics.bytes_sent}")
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        clients=args.clients,
        size_bytes=args.size_bytes,
        loss_rate=args.loss_rate,
        delay_ms=args.delay_ms,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
        max_workers=args.max_workers,
    )
    payload = {"role": "bench", **asdict(r)}
    print(json.dumps(payload, indent=2) if args.json else payload)
    return 0 if r.failed == 0 else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="udpupload", description="Reliable single-file upload over UDP.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate packet loss")
        x.add_argument("--delay-ms", type=int, default=0, help="simulate per-datagram delay")
        x.add_argument("--json", action="store_true")

    serve = sub.add_parser("serve", help="receive uploads into a directory")
    add_common(serve)
    serve.add_argument("port", type=port_number)
    serve.add_argument("--listen-host", default="0.0.0.0")
    serve.add_argument("--out-dir", default=".")
    serve.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS)
    serve.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="abandon sessions silent for this many seconds (default: never)",
    )
    serve.set_defaults(func=cmd_serve)

    send = sub.add_parser("send", help="upload one file")
    add_common(send)
    send.add_argument("host")
    send.add_argument("port", type=port_number)
    send.add_argument("file")
    send.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    send.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
    send.set_defaults(func=cmd_send)

    bench = sub.add_parser("bench", help="concurrent loopback uploads")
    add_common(bench)
    bench.add_argument("--clients", type=int, default=4)
    bench.add_argument("--size-bytes", type=int, default=1_000_000)
    bench.add_argument("--timeout-ms", type=int, default=250)
    bench.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
    bench.add_argument("--max-workers", type=int, default=DEFAULT_MAX_WORKERS)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
