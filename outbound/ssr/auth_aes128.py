"""The auth_aes128_md5 and auth_aes128_sha1 protocols."""

from __future__ import annotations

import base64
import os
import secrets
import struct
import time
from typing import Callable

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .common import (
    AuthAES128DataLengthError,
    AuthAES128IncorrectChecksum,
    AuthAES128IncorrectHMAC,
    AuthAES128PosOutOfRange,
    evp_bytes_to_key,
    hmac_md5,
    hmac_sha1,
    md5_sum,
    sha1_sum,
)
from .protocol import AuthData, Protocol, ProtocolServerInfo

_BLOCK_SIZE = 4096
_AUTH_HEAD_LIMIT = 1200


def _parse_user_id(text: str) -> int | None:
    if text.isascii() and text.isdigit():
        value = int(text)
        if value < 1 << 32:
            return value
    return None


class AuthAES128(Protocol):
    """Client side of auth_aes128_*, parameterised by salt, HMAC and digest."""

    overhead = 9

    def __init__(
        self,
        salt: str,
        hmac_fn: Callable[[bytes, bytes], bytes],
        hash_digest: Callable[[bytes], bytes],
    ) -> None:
        super().__init__()
        self.salt = salt
        self.hmac = hmac_fn
        self.hash_digest = hash_digest
        self.data: AuthData | None = None
        self.has_sent_header = False
        self.pack_id = 1
        self.recv_id = 1
        self.user_key = b""
        self.uid = bytes(4)

    def init_with_server_info(self, info: ProtocolServerInfo) -> None:
        self.server_info = info
        self._init_user()

    def _init_user(self) -> None:
        user_key = None
        params = self.server_info.param.split(":")
        if len(params) >= 2:
            user_id = _parse_user_id(params[0])
            if user_id is not None:
                self.uid = struct.pack("<I", user_id)
                user_key = self.hash_digest(params[1].encode())
        if user_key is None:
            self.uid = os.urandom(4)
            user_key = bytes(self.server_info.key)
        self.user_key = user_key

    def get_data(self) -> AuthData:
        if self.data is None:
            self.data = AuthData()
        return self.data

    def set_data(self, data) -> None:
        if isinstance(data, AuthData):
            self.data = data

    def _pack_data(self, data: bytes) -> bytes:
        data_length = len(data)
        rand_length = 1
        if data_length <= 1200:
            if self.pack_id > 4:
                rand_length += secrets.randbelow(32)
            elif data_length > 900:
                rand_length += secrets.randbelow(128)
            else:
                rand_length += secrets.randbelow(512)

        out_length = rand_length + data_length + 8
        out = bytearray(out_length)
        struct.pack_into("<H", out, 0, out_length & 0xFFFF)
        key = self.user_key + struct.pack("<I", self.pack_id)
        out[2:4] = self.hmac(key, bytes(out[0:2]))[:2]
        out[4:4 + rand_length] = os.urandom(rand_length)
        if rand_length < 128:
            out[4] = rand_length
        else:
            out[4] = 0xFF
            struct.pack_into("<H", out, 5, rand_length & 0xFFFF)
        out[rand_length + 4:rand_length + 4 + data_length] = data
        self.pack_id = (self.pack_id + 1) & 0xFFFFFFFF
        out[out_length - 4:] = self.hmac(key, bytes(out[: out_length - 4]))[:4]
        return bytes(out)

    def _pack_auth_data(self, data: bytes) -> bytes:
        info = self.server_info
        auth = self.get_data()
        data_length = len(data)
        rand_length = secrets.randbelow(512) if data_length > 400 else secrets.randbelow(1024)
        data_offset = rand_length + 16 + 4 + 4 + 7
        out_length = data_offset + data_length + 4
        out = bytearray(out_length)
        encrypt = bytearray(24)
        key = bytes(info.iv) + bytes(info.key)

        out[data_offset - rand_length:] = os.urandom(out_length - data_offset + rand_length)
        auth.connection_id = (auth.connection_id + 1) & 0xFFFFFFFF
        if auth.connection_id > 0xFF000000:
            auth.client_id = None
        if not auth.client_id:
            auth.client_id = os.urandom(8)
            auth.connection_id = int.from_bytes(os.urandom(4), "little") & 0xFFFFFF
        encrypt[4:12] = auth.client_id[:8]
        struct.pack_into("<I", encrypt, 8, auth.connection_id)
        struct.pack_into("<I", encrypt, 0, int(time.time()) & 0xFFFFFFFF)
        struct.pack_into("<H", encrypt, 12, out_length & 0xFFFF)
        struct.pack_into("<H", encrypt, 14, rand_length & 0xFFFF)

        aes_key = evp_bytes_to_key(base64.b64encode(self.user_key).decode() + self.salt, 16)
        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(bytes(16))).encryptor()
        block = encryptor.update(bytes(encrypt[:16])) + encryptor.finalize()
        encrypt[0:4] = self.uid
        encrypt[4:20] = block
        encrypt[20:24] = self.hmac(key, bytes(encrypt[0:20]))[:4]

        out[0:1] = os.urandom(1)
        out[1:7] = self.hmac(key, bytes(out[0:1]))[:6]
        out[7:31] = encrypt
        out[data_offset:data_offset + data_length] = data
        out[out_length - 4:] = self.hmac(self.user_key, bytes(out[: out_length - 4]))[:4]
        return bytes(out)

    def encode(self, data: bytes) -> bytes:
        data = bytes(data)
        out = bytearray()
        offset = 0
        if data and not self.has_sent_header:
            auth_length = min(len(data), _AUTH_HEAD_LIMIT)
            self.has_sent_header = True
            out += self._pack_auth_data(data[:auth_length])
            offset = auth_length
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
            key = self.user_key + struct.pack("<I", self.recv_id)
            digest = self.hmac(key, bytes(frame[0:2]))
            if digest[0] != frame[2] or digest[1] != frame[3]:
                raise AuthAES128IncorrectHMAC()
            length = int.from_bytes(frame[0:2], "little")
            if length >= 8192 or length < 7:
                raise AuthAES128DataLengthError()
            if length > len(frame):
                break
            digest = self.hmac(key, bytes(frame[: length - 4]))
            if digest[:4] != bytes(frame[length - 4:length]):
                raise AuthAES128IncorrectChecksum()
            self.recv_id = (self.recv_id + 1) & 0xFFFFFFFF
            pos = frame[4]
            if pos < 255:
                pos += 4
            else:
                pos = int.from_bytes(frame[5:7], "little") + 4
            if pos > length - 4:
                raise AuthAES128PosOutOfRange()
            out += frame[pos:length - 4]
            consumed += length
        return bytes(out), consumed

    def encode_packet(self, data: bytes) -> bytes:
        body = bytes(data) + self.uid
        return body + self.hmac(self.user_key, body)[:4]

    def decode_packet(self, data: bytes) -> bytes:
        data = bytes(data)
        if len(data) < 4:
            raise AuthAES128DataLengthError()
        if self.hmac(bytes(self.server_info.key), data[:-4])[:4] != data[-4:]:
            raise AuthAES128IncorrectChecksum()
        return data[:-4]


def new_auth_aes128_md5() -> AuthAES128:
    """An auth_aes128_md5 protocol layer."""
    return AuthAES128("auth_aes128_md5", hmac_md5, md5_sum)


def new_auth_aes128_sha1() -> AuthAES128:
    """An auth_aes128_sha1 protocol layer."""
    return AuthAES128("auth_aes128_sha1", hmac_sha1, sha1_sum)