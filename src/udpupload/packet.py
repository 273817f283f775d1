from __future__ import annotations

import enum
import posixpath
from dataclasses import dataclass

from .constants import ACK, HEADER_END, HEADER_FILENAME, MAX_DATAGRAM_SIZE


class ProtocolError(ValueError):
    pass


class DatagramKind(enum.Enum):
    START = "start"
    END = "end"
    DATA = "data"


@dataclass(frozen=True, slots=True)
class Datagram:
    kind: DatagramKind
    payload: bytes = b""
    filename: str | None = None

    @staticmethod
    def parse(raw: bytes) -> "Datagram":
        """Classify one inbound datagram.

        Raises ProtocolError for a filename header whose name is unusable;
        such a datagram is neither a start nor data.
        """
        if raw == HEADER_END:
            return Datagram(kind=DatagramKind.END)
        if raw.startswith(HEADER_FILENAME):
            return Datagram(
                kind=DatagramKind.START,
                filename=sanitize_filename(raw[len(HEADER_FILENAME) :]),
            )
        return Datagram(kind=DatagramKind.DATA, payload=raw)

    def to_bytes(self) -> bytes:
        if self.kind is DatagramKind.END:
            return HEADER_END
        if self.kind is DatagramKind.START:
            if not self.filename:
                raise ValueError("filename header needs a name")
            raw = HEADER_FILENAME + self.filename.encode("utf-8")
        else:
            raw = self.payload
        if len(raw) > MAX_DATAGRAM_SIZE:
            raise ValueError(f"datagram too large: {len(raw)} > {MAX_DATAGRAM_SIZE}")
        return raw

    @staticmethod
    def start(filename: str) -> "Datagram":
        return Datagram(kind=DatagramKind.START, filename=filename)

    @staticmethod
    def data(payload: bytes) -> "Datagram":
        return Datagram(kind=DatagramKind.DATA, payload=payload)

    @staticmethod
    def end() -> "Datagram":
        return Datagram(kind=DatagramKind.END)


def sanitize_filename(raw_name: bytes) -> str:
    try:
        name = raw_name.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("filename is not valid UTF-8") from exc

    # only the last path component is honoured, whichever separator was used
    name = posixpath.basename(name.replace("\\", "/"))
    if name in ("", ".", "..") or "\x00" in name:
        raise ProtocolError(f"unusable filename: {raw_name!r}")
    return name


def is_ack(raw: bytes) -> bool:
    return raw == ACK
