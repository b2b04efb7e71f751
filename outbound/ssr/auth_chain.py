"""The auth_chain_a and auth_chain_b protocols: RC4-encrypted frames whose padding follows a hash chain."""

from __future__ import annotations

import base64
import os
import re
import struct
import time
from bisect import bisect_right

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .common import (
    AuthChainDataLengthError,
    AuthChainIncorrectHMAC,
    Shift128Plus,
    SSRError,
    evp_bytes_to_key,
    hmac_md5,
)
from .protocol import AuthData, Protocol, ProtocolServerInfo

AUTH_HEAD_LENGTH = 4 + 8 + 4 + 16 + 4
_AUTH_HEAD_LIMIT = 1200
_INT_RE = re.compile(r"[+-]?[0-9]+")


class _RC4:
    """A running RC4 keystream."""

    def __init__(self, key: bytes) -> None:
        state = list(range(256))
        j = 0
        for i in range(256):
            j = (j + state[i] + key[i % len(key)]) & 0xFF
            state[i], state[j] = state[j], state[i]
        self._state = state
        self._i = 0
        self._j = 0

    def process(self, data: bytes) -> bytes:
        state = self._state
        i, j = self._i, self._j
        out = bytearray(len(data))
        for n, byte in enumerate(data):
            i = (i + 1) & 0xFF
            j = (j + state[i]) & 0xFF
            state[i], state[j] = state[j], state[i]
            out[n] = byte ^ state[(state[i] + state[j]) & 0xFF]
        self._i, self._j = i, j
        return bytes(out)


def _b64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode()


def auth_chain_a_rand_len(data_length, random, last_hash, data_size_list, data_size_list2, overhead) -> int:
    """Padding length for auth_chain_a, drawn from a generator seeded by the last hash."""
    if data_length > 1440:
        return 0
    random.init_from_bin_datalen(last_hash[:16], data_length)
    if data_length > 1300:
        return random.next() % 31
    if data_length > 900:
        return random.next() % 127
    if data_length > 400:
        return random.next() % 521
    return random.next() % 1021


def auth_chain_b_rand_len(data_length, random, last_hash, data_size_list, data_size_list2, overhead) -> int:
    """Padding length for auth_chain_b, preferring sizes from the key-derived size lists."""
    if data_length > 1440:
        return 0
    random.init_from_bin_datalen(last_hash[:16], data_length)
    target = data_length + overhead
    pos = bisect_right(data_size_list, target)
    final_pos = pos + random.next() % len(data_size_list)
    if final_pos < len(data_size_list):
        return data_size_list[final_pos] - target
    pos = bisect_right(data_size_list2, target)
    final_pos = pos + random.next() % len(data_size_list2)
    if final_pos < len(data_size_list2):
        return data_size_list2[final_pos] - target
    if final_pos < pos + len(data_size_list2) - 1:
        return 0
    if data_length > 1300:
        return random.next() % 31
    if data_length > 900:
        return random.next() % 127
    if data_length > 400:
        return random.next() % 521
    return random.next() % 1021


def auth_chain_packet_rand_len(random, last_hash) -> int:
    """Padding length of one datagram."""
    random.init_from_bin(last_hash)
    return random.next() % 127


def get_rand_start_pos(random, rand_length) -> int:
    """Where the payload starts inside the padding of a frame."""
    if rand_length > 0:
        return random.next() % 8589934609 % rand_length
    return 0


class AuthChainA(Protocol):
    """Client side of auth_chain_a."""

    overhead = 4
    salt = "auth_chain_a"

    def __init__(self) -> None:
        super().__init__()
        self.random_client = Shift128Plus()
        self.random_server = Shift128Plus()
        self.recv_id = 1
        self.chunk_id = 0
        self.has_sent_header = False
        self.last_client_hash = bytes(16)
        self.last_server_hash = bytes(16)
        self.user_key = b""
        self.uid = bytes(4)
        self.data: AuthData | None = None
        self.data_size_list: list[int] = []
        self.data_size_list2: list[int] = []
        self._encryptor: _RC4 | None = None
        self._decryptor: _RC4 | None = None

    def init_with_server_info(self, info: ProtocolServerInfo) -> None:
        self.server_info = info
        self._init_user()

    def _init_user(self) -> None:
        user_key = None
        params = self.server_info.param.split(":")
        if len(params) >= 2 and _INT_RE.fullmatch(params[0]):
            user_id = int(params[0])
            if -(1 << 63) <= user_id < 1 << 63:
                self.uid = struct.pack("<I", user_id & 0xFFFFFFFF)
                user_key = params[1].encode()
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

    def _rand_len(self, data_length: int, random: Shift128Plus, last_hash: bytes) -> int:
        return auth_chain_a_rand_len(
            data_length, random, last_hash, self.data_size_list, self.data_size_list2, self.server_info.overhead
        )

    def _init_cipher(self, client_hash: bytes) -> None:
        key = evp_bytes_to_key(_b64(self.user_key) + _b64(client_hash[:16]), 16)
        self._encryptor = _RC4(key)
        self._decryptor = _RC4(key)

    def _pack_data(self, data: bytes, rand_length: int) -> bytes:
        data_length = len(data)
        out_length = rand_length + data_length + 2
        out = bytearray(out_length)
        out[0] = (data_length & 0xFF) ^ self.last_client_hash[14]
        out[1] = ((data_length >> 8) & 0xFF) ^ self.last_client_hash[15]
        if data_length > 0:
            start = 2 + get_rand_start_pos(self.random_client, rand_length)
            out[2:start] = os.urandom(start - 2)
            out[start:start + data_length] = self._encryptor.process(data)
            out[start + data_length:] = os.urandom(out_length - start - data_length)
        else:
            out[2:2 + rand_length] = os.urandom(rand_length)
        self.chunk_id = (self.chunk_id + 1) & 0xFFFFFFFF
        key = self.user_key + struct.pack("<I", self.chunk_id)
        self.last_client_hash = hmac_md5(key, bytes(out))
        return bytes(out) + self.last_client_hash[:2]

    def _pack_chunk(self, data: bytes) -> bytes:
        rand_length = self._rand_len(len(data), self.random_client, self.last_client_hash)
        return self._pack_data(data, rand_length)

    def _pack_auth_data(self, data: bytes) -> bytes:
        info = self.server_info
        auth = self.get_data()
        auth.connection_id = (auth.connection_id + 1) & 0xFFFFFFFF
        if auth.connection_id > 0xFF000000 or auth.client_id is None:
            auth.client_id = os.urandom(4)
            auth.connection_id = int.from_bytes(os.urandom(4), "little") & 0xFFFFFF
        key = bytes(info.iv) + bytes(info.key)

        encrypt = bytearray(20)
        struct.pack_into("<I", encrypt, 0, int(time.time()) & 0xFFFFFFFF)
        encrypt[4:8] = auth.client_id[:4]
        struct.pack_into("<I", encrypt, 8, auth.connection_id)
        struct.pack_into("<H", encrypt, 12, info.overhead & 0xFFFF)

        head = bytearray(AUTH_HEAD_LENGTH)
        head[0:4] = os.urandom(4)
        self.last_client_hash = hmac_md5(key, bytes(head[0:4]))
        head[4:12] = self.last_client_hash[:8]

        uid = bytes(u ^ h for u, h in zip(self.uid, self.last_client_hash[8:12]))
        base64_user_key = _b64(self.user_key)
        aes_key = evp_bytes_to_key(base64_user_key + self.salt, 16)
        encryptor = Cipher(algorithms.AES(aes_key), modes.CBC(bytes(16))).encryptor()
        block = encryptor.update(bytes(encrypt[:16])) + encryptor.finalize()
        encrypt[0:4] = uid
        encrypt[4:20] = block

        self.last_server_hash = hmac_md5(self.user_key, bytes(encrypt))
        head[12:32] = encrypt
        head[32:36] = self.last_server_hash[:4]

        self._init_cipher(self.last_client_hash)
        return bytes(head) + self._pack_chunk(data)

    def encode(self, data: bytes) -> bytes:
        data = bytes(data)
        out = bytearray()
        offset = 0
        if data and not self.has_sent_header:
            head_size = min(_AUTH_HEAD_LIMIT, len(data))
            out += self._pack_auth_data(data[:head_size])
            offset = head_size
            self.has_sent_header = True
        unit_size = self.server_info.tcp_mss - self.server_info.overhead
        while len(data) - offset > unit_size:
            if unit_size <= 0:
                raise ValueError(f"invalid chunk size {unit_size}")
            out += self._pack_chunk(data[offset:offset + unit_size])
            offset += unit_size
        if len(data) - offset > 0:
            out += self._pack_chunk(data[offset:])
        return bytes(out)

    def decode(self, data: bytes) -> tuple[bytes, int]:
        view = bytes(data)
        out = bytearray()
        consumed = 0
        while len(view) - consumed > 4:
            frame = view[consumed:]
            key = self.user_key + struct.pack("<I", self.recv_id)
            data_len = ((frame[1] ^ self.last_server_hash[15]) << 8) + (frame[0] ^ self.last_server_hash[14])
            rand_len = self._rand_len(data_len, self.random_server, self.last_server_hash)
            length = rand_len + data_len
            if length >= 4096:
                raise AuthChainDataLengthError()
            length += 4
            if length > len(frame):
                break
            digest = hmac_md5(key, frame[: length - 2])
            if digest[:2] != frame[length - 2:length]:
                raise AuthChainIncorrectHMAC()
            if data_len > 0 and rand_len > 0:
                pos = 2 + get_rand_start_pos(self.random_server, rand_len)
            else:
                pos = 2
            if self._decryptor is None:
                raise SSRError("auth_chain cipher is not initialised")
            out += self._decryptor.process(frame[pos:pos + data_len])
            if self.recv_id == 1:
                self.server_info.tcp_mss = int.from_bytes(out[:2], "little")
                del out[:2]
            self.last_server_hash = digest
            self.recv_id = (self.recv_id + 1) & 0xFFFFFFFF
            consumed += length
        return bytes(out), consumed

    def encode_packet(self, data: bytes) -> bytes:
        auth_data = os.urandom(3)
        md5_data = hmac_md5(bytes(self.server_info.key), auth_data)
        rand_length = auth_chain_packet_rand_len(self.random_client, md5_data)
        rc4_key = evp_bytes_to_key(_b64(self.user_key) + _b64(md5_data), 16)
        body = _RC4(rc4_key).process(bytes(data))
        uid = int.from_bytes(self.uid, "little") ^ int.from_bytes(md5_data[:4], "little")
        out = body + os.urandom(rand_length) + auth_data + struct.pack("<I", uid)
        return out + hmac_md5(self.user_key, out)[:1]

    def decode_packet(self, data: bytes) -> bytes:
        data = bytes(data)
        if len(data) < 9:
            raise AuthChainDataLengthError()
        if hmac_md5(self.user_key, data[:-1])[:1] != data[-1:]:
            raise AuthChainIncorrectHMAC()
        md5_data = hmac_md5(bytes(self.server_info.key), data[-8:-1])
        rand_length = auth_chain_packet_rand_len(self.random_server, md5_data)
        end = len(data) - 8 - rand_length
        if end < 0:
            raise AuthChainDataLengthError()
        rc4_key = evp_bytes_to_key(_b64(self.user_key) + _b64(md5_data), 16)
        return _RC4(rc4_key).process(data[:end])


class AuthChainB(AuthChainA):
    """Client side of auth_chain_b: auth_chain_a with padding sized from key-derived lists."""

    salt = "auth_chain_b"

    def init_with_server_info(self, info: ProtocolServerInfo) -> None:
        self.server_info = info
        self._init_data_size()
        self._init_user()

    def _init_data_size(self) -> None:
        key = bytes(self.server_info.key)
        if not key:
            return
        random = self.random_server
        random.init_from_bin(key)
        length = random.next() % 8 + 4
        self.data_size_list = sorted(random.next() % 2340 % 2040 % 1440 for _ in range(length))
        length = random.next() % 16 + 8
        self.data_size_list2 = sorted(random.next() % 2340 % 2040 % 1440 for _ in range(length))

    def _rand_len(self, data_length: int, random: Shift128Plus, last_hash: bytes) -> int:
        return auth_chain_b_rand_len(
            data_length, random, last_hash, self.data_size_list, self.data_size_list2, self.server_info.overhead
        )