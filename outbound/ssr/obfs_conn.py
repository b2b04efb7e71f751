"""The obfuscation registry, a stream wrapped by an obfuscation layer, and its dialer."""

from __future__ import annotations

import threading
import typing
from dataclasses import dataclass
from functools import partial
from typing import Callable

from .common import SSRError
from .obfs import Obfs, PlainObfs, RandomHeadObfs, ServerInfo, new_http_post, new_http_simple
from .tls12_ticket_auth import TLS12TicketAuth


class _Stream(typing.Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes): ...

    def close(self) -> None: ...


class _Dialer(typing.Protocol):
    def dial(self, network: str, addr: str): ...


@dataclass(frozen=True)
class ObfsConstructor:
    """Builds a fresh obfuscation layer and reports the bytes it adds per packet."""

    create: Callable[[], Obfs]
    overhead: int


_CONSTRUCTORS = {
    "plain": ObfsConstructor(PlainObfs, 0),
    "http_simple": ObfsConstructor(new_http_simple, 0),
    "http_post": ObfsConstructor(new_http_post, 0),
    "random_head": ObfsConstructor(RandomHeadObfs, 0),
    "tls1.2_ticket_auth": ObfsConstructor(TLS12TicketAuth, 5),
    "tls1.2_ticket_fastauth": ObfsConstructor(partial(TLS12TicketAuth, fast_auth=True), 5),
}


def get_obfs(name: str) -> ObfsConstructor:
    """Look up an obfuscation by name, case-insensitively."""
    try:
        return _CONSTRUCTORS[name.lower()]
    except KeyError:
        raise ValueError(f"unsupported protocol type: {name}") from None


@dataclass
class ObfsParam:
    obfs_host: str = ""
    obfs_port: int = 0
    obfs: str = "plain"
    obfs_param: str = ""


class ObfsConn:
    """A stream whose traffic passes through an obfuscation layer."""

    def __init__(self, conn: _Stream, obfs: Obfs) -> None:
        self.conn = conn
        self.obfs = obfs
        self._iv_len: int | None = None
        self._key: bytes | None = None
        self._addr_len = 30
        self._initialised = False
        self._read_later = b""
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

    def set_cipher_info(self, iv_len: int, key: bytes) -> None:
        """Record the IV length and key of the cipher layered above."""
        self._iv_len = iv_len
        self._key = bytes(key)

    def set_addr_len(self, addr_len: int) -> None:
        self._addr_len = addr_len

    def _init_encoder(self) -> None:
        if self._iv_len is None:
            raise SSRError("outer conn did not init cipher of Obfs")
        if self._key is None:
            raise SSRError("outer conn did not init cipher")
        info = self.obfs.server_info
        info.iv_len = self._iv_len
        info.key = self._key
        info.addr_len = self._addr_len

    def read(self, size: int) -> bytes:
        """Read and decode up to size bytes; b"" at end of stream."""
        with self._read_lock:
            if self._read_later:
                out, self._read_later = self._read_later[:size], self._read_later[size:]
                return out
            while True:
                chunk = self.conn.read(size)
                if not chunk:
                    return b""
                decoded, send_back = self.obfs.decode(chunk)
                if send_back:
                    self.write(b"")
                    continue
                if decoded:
                    break
            self._read_later = decoded[size:]
            return decoded[:size]

    def write(self, data: bytes) -> int:
        """Encode and send data; returns the number of caller bytes taken."""
        with self._write_lock:
            if not self._initialised:
                self._init_encoder()
                self._initialised = True
            self.conn.write(self.obfs.encode(data))
            return len(data)

    def close(self) -> None:
        self.conn.close()


class ObfsDialer:
    """Dials through another dialer and wraps TCP streams in an obfuscation layer."""

    def __init__(self, next_dialer: _Dialer, param: ObfsParam) -> None:
        self.next_dialer = next_dialer
        self.param = param
        self.constructor = get_obfs(param.obfs)

    @property
    def obfs_overhead(self) -> int:
        return self.constructor.overhead

    def dial(self, network: str, addr: str):
        if network == "tcp":
            conn = self.next_dialer.dial(network, addr)
            obfs = self.constructor.create()
            obfs.set_data(obfs.get_data())
            obfs.server_info = ServerInfo(
                host=self.param.obfs_host,
                port=self.param.obfs_port,
                param=self.param.obfs_param,
            )
            return ObfsConn(conn, obfs)
        if network == "udp":
            return self.next_dialer.dial(network, addr)
        raise ValueError(f"unsupported tunnel type: {network}")