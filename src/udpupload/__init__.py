"""Reliable single-file upload over UDP.

A client pushes one file as a filename header, fixed-size chunks and an end
marker, each acknowledged before the next is sent. The server keys uploads
by the sender's address, queues each client's chunks on its own session and
writes them to a uniquely named file from a bounded worker pool.
"""

from .packet import Datagram, DatagramKind, ProtocolError
from .registry import SessionRegistry
from .sender import Metrics, ReliableSender, TransferFailed
from .server import ServerConfig, UploadServer
from .session import Phase, TransferSession

__all__ = [
    "Datagram",
    "DatagramKind",
    "Metrics",
    "Phase",
    "ProtocolError",
    "ReliableSender",
    "ServerConfig",
    "SessionRegistry",
    "TransferFailed",
    "TransferSession",
    "UploadServer",
]
