"""VMess AEAD primitives: ciphers, the KDF, the authenticated request header and chunk size parsers."""

from __future__ import annotations

import enum
import hashlib
import hmac
import os
import secrets
import struct
import time
import zlib
from functools import partial
from typing import Callable

from cryptography.hazmat.primitives.ciphers import Cipher as _BlockCipher
from cryptography.hazmat.primitives.ciphers import algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

KDF_SALT_AUTH_ID_ENCRYPTION_KEY = b"AES Auth ID Encryption"
KDF_SALT_AEAD_RESP_HEADER_LEN_KEY = b"AEAD Resp Header Len Key"
KDF_SALT_AEAD_RESP_HEADER_LEN_IV = b"AEAD Resp Header Len IV"
KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_KEY = b"AEAD Resp Header Key"
KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_IV = b"AEAD Resp Header IV"
KDF_SALT_VMESS_AEAD_KDF = b"VMess AEAD KDF"
KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_KEY = b"VMess Header AEAD Key"
KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_IV = b"VMess Header AEAD Nonce"
KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY = b"VMess Header AEAD Key_Length"
KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV = b"VMess Header AEAD Nonce_Length"

OPTION_CHUNK_STREAM = 1
OPTION_CHUNK_LENGTH_MASKING = 4
OPTION_GLOBAL_PADDING = 8

_HMAC_BLOCK_SIZE = 64


class AuthError(Exception):
    """The request failed authentication."""


class ReplayAttackError(Exception):
    """The request repeats an authentication id seen before."""


class Cipher(enum.Enum):
    """Body ciphers a VMess connection can use."""

    CHACHA20_POLY1305 = "chacha20-poly1305"
    AES_128_GCM = "aes-128-gcm"

    def to_security(self) -> int:
        """The security byte that names this cipher on the wire."""
        return 4 if self is Cipher.CHACHA20_POLY1305 else 3


def parse_cipher_from_security(security: int) -> Cipher:
    """The cipher named by a security byte."""
    if security == 4:
        return Cipher.CHACHA20_POLY1305
    if security == 3:
        return Cipher.AES_128_GCM
    raise ValueError(f"unexpected security: {security}")


def _security_for(name: str) -> int:
    try:
        return Cipher(name).to_security()
    except ValueError:
        return Cipher.AES_128_GCM.to_security()


def contain_option(options: int, option: int) -> bool:
    return options & option == option


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _hmac(hash_fn: Callable[[bytes], bytes], key: bytes, msg: bytes) -> bytes:
    if len(key) > _HMAC_BLOCK_SIZE:
        key = hash_fn(key)
    key = key.ljust(_HMAC_BLOCK_SIZE, b"\0")
    inner = hash_fn(bytes(k ^ 0x36 for k in key) + msg)
    return hash_fn(bytes(k ^ 0x5C for k in key) + inner)


def kdf(key: bytes, *args: bytes) -> bytes:
    """The VMess KDF: HMAC-SHA256 keyed by the salt, nested once more for each path element."""
    fn: Callable[[bytes], bytes] = lambda d: hmac.new(KDF_SALT_VMESS_AEAD_KDF, d, hashlib.sha256).digest()
    for part in args:
        fn = partial(_hmac, fn, bytes(part))
    return fn(bytes(key))


def _auth_id_block(cmd_key: bytes):
    return _BlockCipher(algorithms.AES(kdf(cmd_key, KDF_SALT_AUTH_ID_ENCRYPTION_KEY)[:16]), modes.ECB())


def make_eauth_id(cmd_key: bytes) -> bytes:
    """A fresh 16-byte encrypted authentication id: timestamp, random, CRC-32."""
    plain = struct.pack(">Q", int(time.time()) & 0xFFFFFFFFFFFFFFFF) + os.urandom(4)
    plain += struct.pack(">I", zlib.crc32(plain) & 0xFFFFFFFF)
    encryptor = _auth_id_block(cmd_key).encryptor()
    return encryptor.update(plain) + encryptor.finalize()


def auth_eauth_id(cmd_key: bytes, eauth_id: bytes, replay_filter, start_timestamp: int) -> None:
    """Check an encrypted authentication id; raise AuthError or ReplayAttackError if it is refused."""
    if len(eauth_id) != 16:
        raise AuthError("eauth id must be 16 bytes")
    decryptor = _auth_id_block(cmd_key).decryptor()
    plain = decryptor.update(bytes(eauth_id)) + decryptor.finalize()
    if zlib.crc32(plain[:12]) & 0xFFFFFFFF != struct.unpack(">I", plain[12:16])[0]:
        raise AuthError("incorrect checksum")
    (stamp,) = struct.unpack(">q", plain[:8])
    now = int(time.time())
    threshold = 120
    if now - start_timestamp <= 40:
        threshold = 3 * (now - start_timestamp)
    if abs(now - stamp) > threshold:
        raise AuthError("fail to authenticate: time exceed")
    if not replay_filter.check(bytes(eauth_id)):
        raise ReplayAttackError("replay attack: repeated EAuthID")


def _fnv1a32(data: bytes) -> int:
    h = 0x811C9DC5
    for byte in data:
        h ^= byte
        h = (h * 0x01000193) & 0xFFFFFFFF
    return h


def req_instruction_data(metadata) -> bytes:
    """The plain request instruction for metadata, with random IV, key and padding."""
    from .addr import metadata_type_to_byte, network_to_byte

    padding = secrets.randbelow(16)
    head = bytearray(41)
    head[0] = 1
    head[1:34] = os.urandom(33)
    head[34] = OPTION_CHUNK_STREAM | OPTION_CHUNK_LENGTH_MASKING | OPTION_GLOBAL_PADDING
    head[35] = (padding << 4) | _security_for(metadata.cipher)
    head[36] = 0
    head[37] = network_to_byte(metadata.network)
    struct.pack_into(">H", head, 38, metadata.port & 0xFFFF)
    head[40] = metadata_type_to_byte(metadata.type)
    body = bytes(head) + metadata.pack_addr() + os.urandom(padding)
    return body + struct.pack(">I", _fnv1a32(body))


def encrypt_req_header(instruction: bytes, cmd_key: bytes) -> bytes:
    """EAuthID, sealed length, connection nonce and sealed instruction."""
    instruction = bytes(instruction)
    eauth_id = make_eauth_id(cmd_key)
    nonce = os.urandom(8)
    length_key = kdf(cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY, eauth_id, nonce)[:16]
    length_iv = kdf(cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV, eauth_id, nonce)[:12]
    sealed_length = AESGCM(length_key).encrypt(length_iv, struct.pack(">H", len(instruction) & 0xFFFF), eauth_id)
    payload_key = kdf(cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_KEY, eauth_id, nonce)[:16]
    payload_iv = kdf(cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_IV, eauth_id, nonce)[:12]
    sealed_payload = AESGCM(payload_key).encrypt(payload_iv, instruction, eauth_id)
    return eauth_id + sealed_length + nonce + sealed_payload


def resp_header(v: int) -> bytes:
    """Response header: V, option, command and instruction length, with no instruction."""
    return bytes([v & 0xFF, 0, 0, 0])


def new_aes_gcm(key: bytes) -> AESGCM:
    return AESGCM(bytes(key))


def generate_chacha20_poly1305_key(key: bytes) -> bytes:
    """Stretch a 16-byte key to 32 bytes: md5(key) followed by md5(md5(key))."""
    first = hashlib.md5(bytes(key)).digest()
    return first + hashlib.md5(first).digest()


def new_chacha20_poly1305(key: bytes) -> ChaCha20Poly1305:
    key = bytes(key)
    if len(key) == 16:
        key = generate_chacha20_poly1305_key(key)
    return ChaCha20Poly1305(key)


def new_aead(cipher: Cipher | str, key: bytes):
    """An AEAD for the named cipher."""
    try:
        chosen = Cipher(cipher)
    except ValueError:
        raise ValueError(f"unexpected cipher: {cipher}") from None
    if chosen is Cipher.CHACHA20_POLY1305:
        return new_chacha20_poly1305(key)
    return new_aes_gcm(key)


class ShakeSizeParser:
    """Masks chunk sizes and draws padding lengths from a SHAKE128 stream seeded by a nonce."""

    size_bytes = 2

    def __init__(self, nonce: bytes) -> None:
        self._shake = hashlib.shake_128(bytes(nonce))
        self._stream = b""
        self._pos = 0

    def _next(self) -> int:
        end = self._pos + 2
        if end > len(self._stream):
            self._stream = self._shake.digest(max(2 * len(self._stream), end, 256))
        value = int.from_bytes(self._stream[self._pos:end], "big")
        self._pos = end
        return value

    def encode(self, size: int) -> bytes:
        return struct.pack(">H", (self._next() ^ size) & 0xFFFF)

    def decode(self, data: bytes) -> int:
        if len(data) < 2:
            raise ValueError("size needs 2 bytes")
        return self._next() ^ int.from_bytes(data[:2], "big")

    def next_padding_len(self) -> int:
        return self._next() % 64

    def max_padding_len(self) -> int:
        return 64


class PlainChunkSizeParser:
    """Writes chunk sizes as plain big-endian 16-bit numbers."""

    size_bytes = 2

    def encode(self, size: int) -> bytes:
        return struct.pack(">H", size & 0xFFFF)

    def decode(self, data: bytes) -> int:
        if len(data) < 2:
            raise ValueError("size needs 2 bytes")
        return int.from_bytes(data[:2], "big")


class PlainPaddingGenerator:
    """No padding."""

    def next_padding_len(self) -> int:
        return 0

    def max_padding_len(self) -> int:
        return 0