"""The SSR protocol layer: its interface, the origin protocol, the registry and a wrapped stream."""

from __future__ import annotations

import abc
import threading
import typing
from dataclasses import dataclass, field, replace


class _Stream(typing.Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes): ...

    def close(self) -> None: ...


@dataclass
class ProtocolServerInfo:
    """What a protocol layer knows about the server and the cipher below it."""

    param: str = ""
    tcp_mss: int = 1460
    iv: bytes = field(default=b"", repr=False)
    key: bytes = field(default=b"", repr=False)
    addr_len: int = 0
    overhead: int = 0


@dataclass
class AuthData:
    """Client identity shared between connections of one server."""

    client_id: bytes | None = None
    connection_id: int = 0


class Protocol(abc.ABC):
    """A protocol layer: frames and authenticates stream and packet data."""

    overhead = 0

    def __init__(self) -> None:
        self.server_info = ProtocolServerInfo()

    def init_with_server_info(self, info: ProtocolServerInfo) -> None:
        self.server_info = info

    @abc.abstractmethod
    def encode(self, data: bytes) -> bytes:
        """Frame outgoing stream data."""

    @abc.abstractmethod
    def decode(self, data: bytes) -> tuple[bytes, int]:
        """Unframe incoming stream data; returns the payload and the number of input bytes used."""

    def encode_packet(self, data: bytes) -> bytes:
        """Frame one outgoing datagram."""
        return data

    def decode_packet(self, data: bytes) -> bytes:
        """Unframe one incoming datagram."""
        return data

    def get_data(self):
        """Shared state kept between connections; None for protocols without any."""
        return None

    def set_data(self, data) -> None:
        """Adopt shared state; ignored by protocols without any."""


class Origin(Protocol):
    """The identity protocol."""

    overhead = 0

    def init_with_server_info(self, info: ProtocolServerInfo) -> None:
        self.server_info = replace(info)

    def encode(self, data: bytes) -> bytes:
        return data

    def decode(self, data: bytes) -> tuple[bytes, int]:
        return data, len(data)

    def encode_packet(self, data: bytes) -> bytes:
        return data

    def decode_packet(self, data: bytes) -> bytes:
        return data


def new_protocol(name: str) -> Protocol:
    """Create a protocol layer by name, case-insensitively."""
    key = name.lower()
    if key == "origin":
        return Origin()
    if key == "auth_sha1_v4":
        from .auth_sha1_v4 import AuthSHA1v4

        return AuthSHA1v4()
    if key == "auth_aes128_md5":
        from .auth_aes128 import new_auth_aes128_md5

        return new_auth_aes128_md5()
    if key == "auth_aes128_sha1":
        from .auth_aes128 import new_auth_aes128_sha1

        return new_auth_aes128_sha1()
    if key == "auth_chain_a":
        from .auth_chain import AuthChainA

        return AuthChainA()
    if key == "auth_chain_b":
        from .auth_chain import AuthChainB

        return AuthChainB()
    raise ValueError(f"unsupported protocol type: {name}")


class ProtocolConn:
    """A stream whose traffic passes through a protocol layer."""

    _READ_SIZE = 2048

    def __init__(self, conn: _Stream, protocol: Protocol) -> None:
        self.conn = conn
        self.protocol = protocol
        self._pending = bytearray()
        self._read_later = b""
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def read(self, size: int) -> bytes:
        """Read and decode up to size bytes; b"" at end of stream."""
        with self._read_lock:
            if self._read_later:
                out, self._read_later = self._read_later[:size], self._read_later[size:]
                return out
            while True:
                chunk = self.conn.read(self._READ_SIZE)
                if not chunk:
                    return b""
                self._pending += chunk
                try:
                    decoded, consumed = self.protocol.decode(bytes(self._pending))
                except Exception:
                    self._pending.clear()
                    raise
                if consumed:
                    del self._pending[:consumed]
                if decoded:
                    break
            self._read_later = decoded[size:]
            return decoded[:size]

    def write(self, data: bytes) -> int:
        """Encode and send data; returns the number of caller bytes taken."""
        with self._write_lock:
            self.conn.write(self.protocol.encode(data))
            return len(data)

    def close(self) -> None:
        self.conn.close()