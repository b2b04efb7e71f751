"""The tls1.2_ticket_auth obfuscation: a fake TLS 1.2 handshake followed by application-data records."""

from __future__ import annotations

import os
import secrets
import struct
import time
from dataclasses import dataclass, field

from .common import (
    OBFS_HMAC_SHA1_LEN,
    SSRError,
    TLS12TicketAuthHMACError,
    TLS12TicketAuthIncorrectMagicNumber,
    TLS12TicketAuthTooShortData,
    hmac_sha1,
)
from .obfs import Obfs, ServerInfo

_APP_DATA_MAGIC = b"\x17\x03\x03"
_HANDSHAKE_FINISH = b"\x14\x03\x03\x00\x01\x01\x16\x03\x03\x00\x20"
_TLS_DATA0 = (
    b"\x00\x1c\xc0\x2b\xc0\x2f\xcc\xa9\xcc\xa8\xcc\x14\xcc\x13\xc0\x0a\xc0\x14"
    b"\xc0\x09\xc0\x13\x00\x9c\x00\x35\x00\x2f\x00\x0a\x01\x00"
)
_TLS_DATA1 = b"\xff\x01\x00\x01\x00"
_TLS_DATA2_PREFIX = b"\x00\x17\x00\x00\x00\x23"
_TLS_DATA3 = (
    b"\x00\x0d\x00\x16\x00\x14\x06\x01\x06\x03\x05\x01\x05\x03\x04\x01\x04\x03"
    b"\x03\x01\x03\x03\x02\x01\x02\x03"
    b"\x00\x05\x00\x05\x01\x00\x00\x00\x00"
    b"\x00\x12\x00\x00"
    b"\x75\x50\x00\x00"
    b"\x00\x0b\x00\x02\x01\x00"
    b"\x00\x0a\x00\x06\x00\x04\x00\x17\x00\x18"
    b"\x00\x15\x00\x66" + b"\x00" * 0x66
)
_MIN_SERVER_HELLO = 11 + 32 + 1 + 32


@dataclass
class TLSAuthData:
    """State shared between connections: the client id placed in every hello."""

    local_client_id: bytes = field(default_factory=lambda: os.urandom(32))


def pack_data(suffix_data: bytes) -> bytes:
    """Wrap data in one TLS application-data record."""
    return _APP_DATA_MAGIC + struct.pack(">H", len(suffix_data) & 0xFFFF) + bytes(suffix_data)


def _pack_records(data: bytes) -> bytes:
    if len(data) < 1024:
        return pack_data(data)
    out = bytearray()
    start = 0
    while len(data) - start > 2048:
        size = min(secrets.randbelow(4096) + 100, len(data) - start)
        out += pack_data(data[start:start + size])
        start += size
    if len(data) - start > 0:
        out += pack_data(data[start:])
    return bytes(out)


class TLS12TicketAuth(Obfs):
    """Client side of tls1.2_ticket_auth and tls1.2_ticket_fastauth."""

    def __init__(self, fast_auth: bool = False, server_info: ServerInfo | None = None) -> None:
        super().__init__(server_info)
        self.fast_auth = fast_auth
        self.data: TLSAuthData | None = None
        self.handshake_status = 0
        self._send_saver = bytearray()
        self._recv_buffer = bytearray()

    def get_data(self) -> TLSAuthData:
        if self.data is None:
            self.data = TLSAuthData()
        return self.data

    def set_data(self, data) -> None:
        if isinstance(data, TLSAuthData):
            self.data = data

    def _host(self) -> str:
        info = self.server_info
        host = info.host
        if info.param:
            host = secrets.choice(info.param.split(",")).strip()
        if host and host[-1].isdigit() and host[-1] in "0123456789" and not info.param:
            host = ""
        return host

    def _hmac(self, data: bytes) -> bytes:
        key = bytes(self.server_info.key) + self.get_data().local_client_id
        return hmac_sha1(key, data)[:OBFS_HMAC_SHA1_LEN]

    def _auth_data(self) -> bytes:
        head = struct.pack(">I", int(time.time()) & 0xFFFFFFFF) + os.urandom(18)
        return head + self._hmac(head)

    @staticmethod
    def _sni(host: str) -> bytes:
        name = host.encode()
        n = len(name)
        return (
            b"\x00\x00"
            + struct.pack(">H", (n + 5) & 0xFFFF)
            + struct.pack(">H", (n + 3) & 0xFFFF)
            + b"\x00"
            + struct.pack(">H", n & 0xFFFF)
            + name
        )

    def _client_hello(self) -> bytes:
        ticket_len = secrets.randbelow(164) * 2 + 64
        tls_data = (
            _TLS_DATA1
            + self._sni(self._host())
            + _TLS_DATA2_PREFIX
            + struct.pack(">H", ticket_len)
            + os.urandom(ticket_len)
            + _TLS_DATA3
        )
        body = (
            b"\x03\x03"
            + self._auth_data()
            + b"\x20"
            + self.get_data().local_client_id
            + _TLS_DATA0
            + struct.pack(">H", len(tls_data) & 0xFFFF)
            + tls_data
        )
        handshake = b"\x01\x00" + struct.pack(">H", len(body) & 0xFFFF) + body
        return b"\x16\x03\x01" + struct.pack(">H", len(handshake) & 0xFFFF) + handshake

    def encode(self, data: bytes) -> bytes:
        if self.handshake_status == 8:
            return _pack_records(data)
        if self.handshake_status == 1:
            if data:
                self._send_saver += _pack_records(data)
                return b""
            head = _HANDSHAKE_FINISH + os.urandom(22)
            finish = head + self._hmac(head) + bytes(self._send_saver)
            self._send_saver.clear()
            self.handshake_status = 8
            return finish
        if self.handshake_status == 0:
            hello = self._client_hello()
            self._send_saver += pack_data(data)
            self.handshake_status = 1
            return hello
        raise SSRError(f"unexpected handshake status: {self.handshake_status}")

    def decode(self, data: bytes) -> tuple[bytes, bool]:
        if self.handshake_status == -1:
            return data, False
        if self.handshake_status == 8:
            self._recv_buffer += data
            out = bytearray()
            while len(self._recv_buffer) > 5:
                magic = bytes(self._recv_buffer[:3])
                if magic != _APP_DATA_MAGIC:
                    raise TLS12TicketAuthIncorrectMagicNumber(
                        f"tls1.2_ticket_auth incorrect magic number: {magic.hex()}, 170303 is expected"
                    )
                size = int.from_bytes(self._recv_buffer[3:5], "big")
                if len(self._recv_buffer) - 5 < size:
                    break
                out += self._recv_buffer[5:5 + size]
                del self._recv_buffer[:5 + size]
            return bytes(out), False

        if len(data) < _MIN_SERVER_HELLO:
            raise TLS12TicketAuthTooShortData()
        expected = self._hmac(data[11:33])
        if bytes(data[33:33 + OBFS_HMAC_SHA1_LEN]) != expected:
            raise TLS12TicketAuthHMACError()
        return b"", True