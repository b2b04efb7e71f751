"""Checksums, digests, the xorshift128+ generator and errors shared by the SSR layers."""

from __future__ import annotations

import hashlib
import hmac
import struct
import zlib

_MASK64 = (1 << 64) - 1

OBFS_HMAC_SHA1_LEN = 10


class Shift128Plus:
    """The xorshift128+ generator used to derive padding lengths."""

    __slots__ = ("v0", "v1")

    def __init__(self) -> None:
        self.v0 = 0
        self.v1 = 0

    def init_from_bin(self, data: bytes) -> None:
        """Seed from up to 16 bytes, zero padded, read as two little-endian words."""
        fill = bytes(data[:16]).ljust(16, b"\0")
        self.v0, self.v1 = struct.unpack("<QQ", fill)

    def init_from_bin_datalen(self, data: bytes, datalen: int) -> None:
        """Seed like init_from_bin with the first two bytes replaced by datalen, then advance 4 steps."""
        fill = bytearray(bytes(data[:16]).ljust(16, b"\0"))
        struct.pack_into("<H", fill, 0, datalen & 0xFFFF)
        self.v0, self.v1 = struct.unpack("<QQ", fill)
        for _ in range(4):
            self.next()

    def next(self) -> int:
        x, y = self.v0, self.v1
        self.v0 = y
        x ^= (x << 23) & _MASK64
        x ^= y ^ (x >> 17) ^ (y >> 26)
        self.v1 = x
        return (x + y) & _MASK64


def _check_length(data: bytes, length: int, minimum: int = 0) -> None:
    if length < minimum or length > len(data):
        raise ValueError(f"length {length} out of range for {len(data)} bytes")


def calc_adler32(data: bytes) -> int:
    """Adler-32 checksum of data."""
    return zlib.adler32(bytes(data)) & 0xFFFFFFFF


def check_adler32(data: bytes, length: int) -> bool:
    """True if the last 4 of the first length bytes hold the little-endian Adler-32 of the rest."""
    _check_length(data, length, 4)
    (checksum,) = struct.unpack_from("<I", data, length - 4)
    return calc_adler32(data[: length - 4]) == checksum


def calc_crc32(data: bytes, length: int) -> int:
    """CRC-32 (IEEE) of the first length bytes of data."""
    _check_length(data, length)
    return zlib.crc32(bytes(data[:length])) & 0xFFFFFFFF


def set_crc32(buffer: bytes, length: int) -> bytes:
    """Return buffer with its bytes length-4..length replaced by the complemented CRC of what precedes them."""
    _check_length(buffer, length, 4)
    crc = calc_crc32(buffer, length - 4)
    return bytes(buffer[: length - 4]) + struct.pack("<I", crc ^ 0xFFFFFFFF) + bytes(buffer[length:])


def check_crc32(data: bytes, length: int) -> bool:
    """True if the first length bytes carry a trailer written by set_crc32."""
    return calc_crc32(data, length) == 0xFFFFFFFF


def hmac_md5(key: bytes, data: bytes) -> bytes:
    return hmac.new(bytes(key), bytes(data), hashlib.md5).digest()


def hmac_sha1(key: bytes, data: bytes) -> bytes:
    return hmac.new(bytes(key), bytes(data), hashlib.sha1).digest()


def md5_sum(data: bytes) -> bytes:
    return hashlib.md5(bytes(data)).digest()


def sha1_sum(data: bytes) -> bytes:
    return hashlib.sha1(bytes(data)).digest()


def evp_bytes_to_key(password: str | bytes, key_len: int) -> bytes:
    """Derive a key of key_len bytes the way OpenSSL's EVP_BytesToKey does with MD5 and no salt."""
    secret = password.encode() if isinstance(password, str) else bytes(password)
    out = b""
    prev = b""
    while len(out) < key_len:
        prev = hashlib.md5(prev + secret).digest()
        out += prev
    return out[:key_len]


class SSRError(Exception):
    """Base class for errors raised by the SSR protocol and obfuscation layers."""

    default_message = "shadowsocksr error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message if message is not None else self.default_message)


class AuthSHA1v4CRC32Error(SSRError):
    default_message = "auth_sha1_v4 post decrypt data crc32 error"


class AuthSHA1v4DataLengthError(SSRError):
    default_message = "auth_sha1_v4 post decrypt data length error"


class AuthSHA1v4IncorrectChecksum(SSRError):
    default_message = "auth_sha1_v4 post decrypt incorrect checksum"


class AuthAES128IncorrectHMAC(SSRError):
    default_message = "auth_aes128_* post decrypt incorrect hmac"


class AuthAES128DataLengthError(SSRError):
    default_message = "auth_aes128_* post decrypt length mismatch"


class AuthAES128IncorrectChecksum(SSRError):
    default_message = "auth_aes128_* post decrypt incorrect checksum"


class AuthAES128PosOutOfRange(SSRError):
    default_message = "auth_aes128_* post decrypt pos out of range"


class AuthChainDataLengthError(SSRError):
    default_message = "auth_chain_* post decrypt length mismatch"


class AuthChainIncorrectHMAC(SSRError):
    default_message = "auth_chain_* post decrypt incorrect hmac"


class TLS12TicketAuthTooShortData(SSRError):
    default_message = "tls1.2_ticket_auth too short data"


class TLS12TicketAuthHMACError(SSRError):
    default_message = "tls1.2_ticket_auth hmac verifying failed"


class TLS12TicketAuthIncorrectMagicNumber(SSRError):
    default_message = "tls1.2_ticket_auth incorrect magic number"