"""The auth_sha1_v4 protocol: CRC- and Adler-32-checked frames behind an HMAC-SHA1 authenticated header."""

from __future__ import annotations

import os
import secrets
import struct
import time

from .common import (
    OBFS_HMAC_SHA1_LEN,
    AuthSHA1v4CRC32Error,
    AuthSHA1v4DataLengthError,
    AuthSHA1v4IncorrectChecksum,
    calc_adler32,
    calc_crc32,
    check_adler32,
    hmac_sha1,
)
from .protocol import AuthData, Protocol

_SALT = b"auth_sha1_v4"
_BLOCK_SIZE = 4096


def _rand_length(data_length: int) -> int:
    if data_length > 1300:
        return 1
    if data_length > 400:
        return 1 + secrets.randbelow(128)
    return 1 + secrets.randbelow(1024)


class AuthSHA1v4(Protocol):
    """Client side of auth_sha1_v4."""

    overhead = 7

    def __init__(self) -> None:
        super().__init__()
        self.data: AuthData | None = None
        self.has_sent_header = False

    def get_data(self) -> AuthData:
        if self.data is None:
            self.data = AuthData()
        return self.data

    def set_data(self, data) -> None:
        if isinstance(data, AuthData):
            self.data = data

    @staticmethod
    def _pack_data(data: bytes) -> bytes:
        data_length = len(data)
        rand_length = _rand_length(data_length)
        out_length = rand_length + data_length + 8
        out = bytearray(out_length)
        struct.pack_into(">H", out, 0, out_length & 0xFFFF)
        struct.pack_into("<H", out, 2, calc_crc32(out, 2) & 0xFFFF)
        if rand_length < 128:
            out[4] = rand_length
        else:
            out[4] = 0xFF
            struct.pack_into(">H", out, 5, rand_length & 0xFFFF)
        out[rand_length + 4:rand_length + 4 + data_length] = data
        struct.pack_into("<I", out, out_length - 4, calc_adler32(bytes(out[: out_length - 4])))
        return bytes(out)

    def _pack_auth_data(self, data: bytes) -> bytes:
        info = self.server_info
        auth = self.get_data()
        data_length = len(data)
        rand_length = _rand_length(data_length)
        data_offset = rand_length + 4 + 2
        out_length = data_offset + data_length + 12 + OBFS_HMAC_SHA1_LEN
        out = bytearray(out_length)

        auth.connection_id = (auth.connection_id + 1) & 0xFFFFFFFF
        if auth.connection_id > 0xFF000000:
            auth.client_id = None
        if not auth.client_id:
            auth.client_id = os.urandom(8)
            auth.connection_id = int.from_bytes(os.urandom(4), "little") & 0xFFFFFF

        struct.pack_into(">H", out, 0, out_length & 0xFFFF)
        crc_data = bytes(out[0:2]) + _SALT + bytes(info.key)
        struct.pack_into("<I", out, 2, calc_crc32(crc_data, len(crc_data)))
        out[data_offset - rand_length:data_offset] = os.urandom(rand_length)
        if rand_length < 128:
            out[6] = rand_length
        else:
            out[6] = 0xFF
            struct.pack_into(">H", out, 7, rand_length & 0xFFFF)
        struct.pack_into("<I", out, data_offset, int(time.time()) & 0xFFFFFFFF)
        out[data_offset + 4:data_offset + 8] = auth.client_id[:4]
        struct.pack_into("<I", out, data_offset + 8, auth.connection_id)
        out[data_offset + 12:data_offset + 12 + data_length] = data

        key = bytes(info.iv) + bytes(info.key)
        digest = hmac_sha1(key, bytes(out[: out_length - OBFS_HMAC_SHA1_LEN]))
        out[out_length - OBFS_HMAC_SHA1_LEN:] = digest[:OBFS_HMAC_SHA1_LEN]
        return bytes(out)

    def encode(self, data: bytes) -> bytes:
        data = bytes(data)
        out = bytearray()
        offset = 0
        if not self.has_sent_header and data:
            head_size = min(self.server_info.addr_len, len(data))
            out += self._pack_auth_data(data[:head_size])
            offset = head_size
            self.has_sent_header = True
        while len(data) - offset > _BLOCK_SIZE:
            out += self._pack_data(data[offset:offset + _BLOCK_SIZE])
            offset += _BLOCK_SIZE
        if len(data) - offset > 0:
            out += self._pack_data(data[offset:])
        return bytes(out)

    def decode(self, data: bytes) -> tuple[bytes, int]:
        view = memoryview(bytes(data))
        out = bytearray()
        consumed = 0
        while len(view) - consumed > 4:
            frame = view[consumed:]
            crc = calc_crc32(frame, 2)
            if int.from_bytes(frame[2:4], "little") != crc & 0xFFFF:
                raise AuthSHA1v4CRC32Error()
            length = int.from_bytes(frame[0:2], "big")
            if length >= 8192 or length < 8:
                raise AuthSHA1v4DataLengthError()
            if length > len(frame):
                break
            if not check_adler32(frame, length):
                raise AuthSHA1v4IncorrectChecksum()
            pos = frame[4]
            if pos != 0xFF:
                pos += 4
            else:
                pos = int.from_bytes(frame[5:7], "big") + 4
            if pos > length - 4:
                raise AuthSHA1v4DataLengthError()
            out += frame[pos:length - 4]
            consumed += length
        return bytes(out), consumed

    def encode_packet(self, data: bytes) -> bytes:
        return data

    def decode_packet(self, data: bytes) -> bytes:
        return data