"""A VMess AEAD connection: request and response headers, then chunked, sealed bodies."""

from __future__ import annotations

import dataclasses
import hashlib
import ipaddress
import os
import socket
import struct
import threading
import typing
from typing import Iterator

from cryptography.exceptions import InvalidTag

from .addr import Metadata, extract_packet_addr, pack_packet_addr, packet_addr_length
from .aead import (
    KDF_SALT_AEAD_RESP_HEADER_LEN_IV,
    KDF_SALT_AEAD_RESP_HEADER_LEN_KEY,
    KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_IV,
    KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_KEY,
    KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_IV,
    KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_KEY,
    KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV,
    KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY,
    OPTION_CHUNK_LENGTH_MASKING,
    OPTION_GLOBAL_PADDING,
    Cipher,
    PlainChunkSizeParser,
    PlainPaddingGenerator,
    ShakeSizeParser,
    contain_option,
    encrypt_req_header,
    kdf,
    new_aead,
    new_aes_gcm,
    parse_cipher_from_security,
    req_instruction_data,
    resp_header,
)

MAX_CHUNK_SIZE = 1 << 14
MAX_UDP_SIZE = 1 << 11

_OVERHEAD = 16
_NONCE_SIZE = 12


class _Stream(typing.Protocol):
    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes): ...

    def close(self) -> None: ...


def generate_chunk_nonce(nonce: bytes, size: int) -> Iterator[bytes]:
    """Chunk nonces: a 16-bit big-endian counter followed by nonce[2:size]."""
    tail = bytes(nonce[2:size]).ljust(size - 2, b"\0")
    count = 0
    while True:
        yield struct.pack(">H", count) + tail
        count = (count + 1) & 0xFFFF


def _split_host_port(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"missing port in address: {addr}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _join_host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def _resolve(addr: str) -> tuple[str, int]:
    host, port = _split_host_port(addr)
    try:
        return str(ipaddress.ip_address(host)), port
    except ValueError:
        pass
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)
    if not infos:
        raise ValueError(f"no address for {host}")
    return str(infos[0][4][0]), port


def _open(aead, nonce: bytes, data: bytes, aad: bytes | None, what: str) -> bytes:
    try:
        return aead.decrypt(nonce, bytes(data), aad)
    except InvalidTag as exc:
        raise ValueError(f"failed to decrypt {what}") from exc


def _parsers(options: int, iv: bytes):
    if contain_option(options, OPTION_CHUNK_LENGTH_MASKING):
        sizes = ShakeSizeParser(iv)
        padding = sizes if contain_option(options, OPTION_GLOBAL_PADDING) else PlainPaddingGenerator()
        return sizes, padding
    return PlainChunkSizeParser(), PlainPaddingGenerator()


class VMessConn:
    """One VMess connection over a byte stream, client or server side."""

    def __init__(self, conn: _Stream, metadata: Metadata, dial_tgt: str, cmd_key: bytes) -> None:
        self.conn = conn
        self.metadata = dataclasses.replace(metadata)
        self.dial_tgt = dial_tgt
        self.cmd_key = bytes(cmd_key)
        self._target_addr: tuple[str, int] | None = None

        self._cipher: Cipher | None = None
        self.request_body_key = bytes(16)
        self.request_body_iv = bytes(16)
        self.response_body_key = bytes(16)
        self.response_body_iv = bytes(16)
        self._request_options = 0
        self._response_auth = 0

        self._write_aead = None
        self._write_nonces: Iterator[bytes] | None = None
        self._write_sizes = None
        self._write_padding = None
        self._read_aead = None
        self._read_nonces: Iterator[bytes] | None = None
        self._read_sizes = None
        self._read_padding = None

        self._write_started = False
        self._read_started = False
        self._leftover = b""
        self._eof = False
        self._read_lock = threading.Lock()
        self._write_lock = threading.Lock()

        if self.metadata.is_client:
            self.write_request_header()

    def init_context(self, instruction_data: bytes) -> None:
        """Derive body keys, IVs, cipher and options from a request instruction."""
        data = bytes(instruction_data)
        if len(data) < 36:
            raise ValueError(f"instruction too short: {len(data)}")
        self._response_auth = data[33]
        self.request_body_iv = data[1:17]
        self.request_body_key = data[17:33]
        self.response_body_iv = hashlib.sha256(self.request_body_iv).digest()[:16]
        self.response_body_key = hashlib.sha256(self.request_body_key).digest()[:16]
        if not self.metadata.cipher:
            self.metadata.cipher = parse_cipher_from_security(data[35] & 0xF).value
        try:
            self._cipher = Cipher(self.metadata.cipher)
        except ValueError:
            raise ValueError(f"unexpected cipher: {self.metadata.cipher}") from None
        self._request_options = data[34]

    def write_request_header(self) -> None:
        """Send the encrypted request header; done once, on the client side."""
        with self._write_lock:
            if self._write_started:
                return
            self._write_started = True
            instruction = req_instruction_data(self.metadata)
            self.init_context(instruction)
            header = encrypt_req_header(instruction, self.cmd_key)
            self._write_aead = new_aead(self._cipher, self.request_body_key)
            self._write_sizes, self._write_padding = _parsers(self._request_options, self.request_body_iv)
            self._write_nonces = generate_chunk_nonce(self.request_body_iv, _NONCE_SIZE)
            self.conn.write(header)

    def encrypt_response_header(self, header: bytes) -> bytes:
        """Seal the response header length and the header itself."""
        header = bytes(header)
        length_aead = new_aes_gcm(kdf(self.response_body_key, KDF_SALT_AEAD_RESP_HEADER_LEN_KEY)[:16])
        sealed_length = length_aead.encrypt(
            kdf(self.response_body_iv, KDF_SALT_AEAD_RESP_HEADER_LEN_IV)[:12],
            struct.pack(">H", len(header) & 0xFFFF),
            None,
        )
        payload_aead = new_aes_gcm(kdf(self.response_body_key, KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_KEY)[:16])
        sealed_payload = payload_aead.encrypt(
            kdf(self.response_body_iv, KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_IV)[:12], header, None
        )
        return sealed_length + sealed_payload

    def _init_server_write(self) -> bytes:
        if self._cipher is None:
            raise ConnectionError("the request must be read before writing a response")
        prefix = self.encrypt_response_header(resp_header(self._response_auth))
        self._write_aead = new_aead(self._cipher, self.response_body_key)
        self._write_sizes, self._write_padding = _parsers(self._request_options, self.response_body_iv)
        self._write_nonces = generate_chunk_nonce(self.response_body_iv, _NONCE_SIZE)
        return prefix

    def _seal(self, data: bytes) -> bytes:
        padding = self._write_padding.next_padding_len()
        sealed = self._write_aead.encrypt(next(self._write_nonces), bytes(data), None)
        size_field = self._write_sizes.encode(len(sealed) + padding)
        return size_field + sealed + os.urandom(padding)

    def _target(self) -> tuple[str, int]:
        if self._target_addr is None:
            self._target_addr = _resolve(self.dial_tgt)
        return self._target_addr

    def write(self, data: bytes) -> int:
        """Send data; an empty write sends the end-of-stream chunk."""
        if self.metadata.is_packet_addr():
            return self.write_to(data, _join_host_port(*self._target()))
        return self._write(data)

    def _write(self, data: bytes) -> int:
        data = bytes(data)
        with self._write_lock:
            prefix = b""
            if not self._write_started:
                self._write_started = True
                if not self.metadata.is_client:
                    prefix = self._init_server_write()
            if self._write_aead is None:
                raise ConnectionError("connection was not set up for writing")
            if not data:
                self.conn.write(prefix + self._seal(b""))
                return 0
            network = self.metadata.network
            if network == "tcp":
                payload = MAX_CHUNK_SIZE - _OVERHEAD - self._write_sizes.size_bytes - self._write_padding.max_padding_len()
                for start in range(0, len(data), payload):
                    self.conn.write(prefix + self._seal(data[start:start + payload]))
                    prefix = b""
                return len(data)
            if network == "udp":
                self.conn.write(prefix + self._seal(data))
                return len(data)
            raise ValueError(f"unsupported network (instruction cmd): {network}")

    def write_to(self, data: bytes, addr: str) -> int:
        """Send one packet to addr ("host:port")."""
        if self.metadata.is_packet_addr():
            host, port = _resolve(addr)
            self._write(pack_packet_addr(host, port) + bytes(data))
            return len(data)
        return self._write(data)

    def _read_exact(self, size: int, what: str, allow_eof: bool = False) -> bytes | None:
        buf = bytearray()
        while len(buf) < size:
            chunk = self.conn.read(size - len(buf))
            if not chunk:
                if allow_eof and not buf:
                    return None
                raise EOFError(f"failed to read {what}: unexpected EOF")
            buf += chunk
        return bytes(buf)

    def _init_client_read(self) -> None:
        head = self._read_exact(18, "response header length")
        length_aead = new_aes_gcm(kdf(self.response_body_key, KDF_SALT_AEAD_RESP_HEADER_LEN_KEY)[:16])
        plain = _open(
            length_aead,
            kdf(self.response_body_iv, KDF_SALT_AEAD_RESP_HEADER_LEN_IV)[:12],
            head,
            None,
            "response header length",
        )
        header_size = int.from_bytes(plain[:2], "big")
        body = self._read_exact(header_size + 16, "response header")
        payload_aead = new_aes_gcm(kdf(self.response_body_key, KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_KEY)[:16])
        header = _open(
            payload_aead,
            kdf(self.response_body_iv, KDF_SALT_AEAD_RESP_HEADER_PAYLOAD_IV)[:12],
            body,
            None,
            "response header",
        )
        if len(header) < 3:
            raise ValueError(f"response header too short: {len(header)}")
        if header[0] != self._response_auth:
            raise ValueError(f"unexpected response auth: {header[0]}, expect {self._response_auth}")
        if header[2] != 0:
            raise ValueError(f"unexpected response command: {header[2]}")
        self._read_aead = new_aead(self._cipher, self.response_body_key)
        self._read_sizes, self._read_padding = _parsers(self._request_options, self.response_body_iv)
        self._read_nonces = generate_chunk_nonce(self.response_body_iv, _NONCE_SIZE)

    def _init_server_read(self) -> None:
        head = self._read_exact(26, "ALength and ConnectionNonce")
        nonce = head[18:26]
        self.cmd_key = bytes(self.metadata.authed_cmd_key)
        eauth_id = bytes(self.metadata.authed_eauth_id)
        length_aead = new_aes_gcm(
            kdf(self.cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_KEY, eauth_id, nonce)[:16]
        )
        plain = _open(
            length_aead,
            kdf(self.cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_LENGTH_AEAD_IV, eauth_id, nonce)[:12],
            head[:18],
            eauth_id,
            "request header length",
        )
        length = int.from_bytes(plain[:2], "big")
        body = self._read_exact(length + 16, "instruction data")
        payload_aead = new_aes_gcm(kdf(self.cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_KEY, eauth_id, nonce)[:16])
        instruction = _open(
            payload_aead,
            kdf(self.cmd_key, KDF_SALT_VMESS_HEADER_PAYLOAD_AEAD_IV, eauth_id, nonce)[:12],
            body,
            eauth_id,
            "request header",
        )
        self.init_context(instruction)
        self.metadata.complete_from_instruction_data(instruction)
        self.dial_tgt = _join_host_port(self.metadata.hostname, self.metadata.port)
        self._read_aead = new_aead(self._cipher, self.request_body_key)
        self._read_sizes, self._read_padding = _parsers(self._request_options, self.request_body_iv)
        self._read_nonces = generate_chunk_nonce(self.request_body_iv, _NONCE_SIZE)

    def _ensure_read_init(self) -> None:
        if self._read_started:
            if self._read_aead is None:
                raise ConnectionError("use of closed network connection")
            return
        self._read_started = True
        if self.metadata.is_client:
            self._init_client_read()
        else:
            self._init_server_read()

    def _read_chunk(self) -> bytes | None:
        raw = self._read_exact(self._read_sizes.size_bytes, "chunk size", allow_eof=True)
        if raw is None:
            return None
        padding = self._read_padding.next_padding_len()
        size = self._read_sizes.decode(raw)
        if size == _OVERHEAD + padding:
            return None
        if size < _OVERHEAD + padding:
            raise ValueError(f"invalid chunk size: {size}")
        body = self._read_exact(size, "chunk")
        return _open(self._read_aead, next(self._read_nonces), body[: size - padding], None, "chunk")

    def _read(self, size: int) -> bytes:
        with self._read_lock:
            self._ensure_read_init()
            if size <= 0:
                return b""
            if self._leftover:
                out, self._leftover = self._leftover[:size], self._leftover[size:]
                return out
            if self._eof:
                return b""
            chunk = self._read_chunk()
            if chunk is None:
                self._eof = True
                return b""
            self._leftover = chunk[size:]
            return chunk[:size]

    def read(self, size: int) -> bytes:
        """Read up to size bytes of payload; b"" at end of stream."""
        with self._read_lock:
            self._ensure_read_init()
        if self.metadata.is_packet_addr():
            data, _ = self.read_from(size)
            return data
        return self._read(size)

    def read_from(self, size: int) -> tuple[bytes, tuple[str, int] | None]:
        """Read one packet: its payload (up to size bytes) and sender; (b"", None) at end of stream."""
        data = self._read(MAX_UDP_SIZE)
        if not data:
            return b"", None
        if self.metadata.is_packet_addr():
            typ, addr = extract_packet_addr(data)
            start = packet_addr_length(typ)
            return data[start:start + size], addr
        return data[:size], self._target()

    def close(self) -> None:
        self.conn.close()