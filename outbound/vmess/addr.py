"""VMess request metadata: address types, networks, instruction parsing and packet addresses."""

from __future__ import annotations

import enum
import ipaddress
import struct
from dataclasses import dataclass, field

from .aead import parse_cipher_from_security

SEQ_PACKET_MAGIC_ADDRESS = "sp.packet-addr.v2fly.arpa"


class InvalidMetadataError(ValueError):
    """The metadata carries an unknown address type."""


class MetadataType(enum.Enum):
    INVALID = "invalid"
    IPV4 = "ipv4"
    DOMAIN = "domain"
    IPV6 = "ipv6"
    MSG = "msg"


_TYPE_BY_BYTE = {1: MetadataType.IPV4, 2: MetadataType.DOMAIN, 3: MetadataType.IPV6, 4: MetadataType.MSG}
_BYTE_BY_TYPE = {v: k for k, v in _TYPE_BY_BYTE.items()}
_PACKET_TYPE_BY_BYTE = {1: MetadataType.IPV4, 2: MetadataType.IPV6}


def parse_metadata_type(t: int) -> MetadataType:
    return _TYPE_BY_BYTE.get(t, MetadataType.INVALID)


def metadata_type_to_byte(typ: MetadataType) -> int:
    return _BYTE_BY_TYPE.get(typ, 0)


def parse_network(n: int) -> str:
    return {1: "tcp", 2: "udp"}.get(n, "invalid")


def network_to_byte(network: str) -> int:
    return {"tcp": 1, "udp": 2, "mux": 3}.get(network, 0)


def _ip_text(raw: bytes) -> str:
    if len(raw) == 4:
        return str(ipaddress.IPv4Address(raw))
    ip = ipaddress.IPv6Address(raw)
    return str(ip.ipv4_mapped) if ip.ipv4_mapped is not None else str(ip)


@dataclass
class Metadata:
    """Target and options of one VMess request."""

    type: MetadataType = MetadataType.INVALID
    hostname: str = ""
    port: int = 0
    cmd: int = 0
    cipher: str = ""
    is_client: bool = True
    network: str = ""
    authed_cmd_key: bytes = field(default=bytes(16), repr=False)
    authed_eauth_id: bytes = field(default=bytes(16), repr=False)

    def addr_len(self) -> int:
        if self.type is MetadataType.IPV4:
            return 4
        if self.type is MetadataType.IPV6:
            return 16
        if self.type is MetadataType.DOMAIN:
            return 1 + len(self.hostname.encode())
        if self.type is MetadataType.MSG:
            return 1
        return 0

    def pack_addr(self) -> bytes:
        """The address as it appears in the instruction."""
        if self.type is MetadataType.IPV4:
            ip = ipaddress.ip_address(self.hostname)
            if isinstance(ip, ipaddress.IPv6Address):
                if ip.ipv4_mapped is None:
                    raise ValueError(f"not an IPv4 address: {self.hostname}")
                ip = ip.ipv4_mapped
            return ip.packed
        if self.type is MetadataType.IPV6:
            ip = ipaddress.ip_address(self.hostname)
            if isinstance(ip, ipaddress.IPv4Address):
                ip = ipaddress.IPv6Address("::ffff:" + str(ip))
            return ip.packed
        if self.type is MetadataType.DOMAIN:
            name = self.hostname.encode()
            if len(name) > 255:
                raise ValueError("domain name too long")
            return bytes([len(name)]) + name
        if self.type is MetadataType.MSG:
            return bytes([self.cmd & 0xFF])
        return b""

    def complete_from_instruction_data(self, data: bytes) -> None:
        """Fill target, port, network and cipher from a decrypted instruction."""
        data = bytes(data)
        if len(data) < 41:
            raise ValueError(f"bad req: insuffient data: expected at least 41 but got: {len(data)}")
        self.type = parse_metadata_type(data[40])
        if self.type is MetadataType.IPV4:
            if len(data) < 45:
                raise ValueError(f"bad ipv4 req: insuffient data: expected 45 but got: {len(data)}")
            self.hostname = _ip_text(data[41:45])
        elif self.type is MetadataType.IPV6:
            if len(data) < 57:
                raise ValueError(f"bad ipv6 req: insuffient data: expected 57 but got: {len(data)}")
            self.hostname = _ip_text(data[41:57])
        elif self.type is MetadataType.DOMAIN:
            if len(data) < 42:
                raise ValueError(f"bad domain req: insuffient data: expected 42 but got: {len(data)}")
            end = 42 + data[41]
            if len(data) < end:
                raise ValueError(f"bad domain req: insuffient data: expected {end} but got: {len(data)}")
            self.hostname = data[42:end].decode("utf-8", "replace")
        elif self.type is MetadataType.MSG:
            if len(data) < 42:
                raise ValueError(f"bad msg req: insuffient data: expected 42 but got: {len(data)}")
            self.cmd = data[41]
        else:
            raise InvalidMetadataError(f"invalid metadata: invalid type: {data[40]}")
        (self.port,) = struct.unpack(">H", data[38:40])
        self.network = parse_network(data[37])
        self.cipher = parse_cipher_from_security(data[35] & 0xF).value

    def is_packet_addr(self) -> bool:
        return (
            self.network == "udp"
            and self.type is MetadataType.DOMAIN
            and self.hostname == SEQ_PACKET_MAGIC_ADDRESS
        )


def new_server_metadata(cmd_key: bytes, eauth_id: bytes) -> Metadata:
    """Server-side metadata for a request whose EAuthID has been authenticated."""
    return Metadata(
        is_client=False,
        authed_cmd_key=bytes(cmd_key[:16]).ljust(16, b"\0"),
        authed_eauth_id=bytes(eauth_id[:16]).ljust(16, b"\0"),
    )


def packet_addr_length(typ: MetadataType) -> int:
    if typ is MetadataType.IPV4:
        return 1 + 4 + 2
    if typ is MetadataType.IPV6:
        return 1 + 16 + 2
    return 0


def extract_packet_addr(src: bytes) -> tuple[MetadataType, tuple[str, int]]:
    """Read the packet address at the start of src: its type and (host, port)."""
    src = bytes(src)
    if not src:
        raise ValueError("invalid packet addr")
    typ = _PACKET_TYPE_BY_BYTE.get(src[0], MetadataType.INVALID)
    if typ is MetadataType.INVALID:
        raise ValueError("invalid packet addr type")
    length = packet_addr_length(typ)
    if len(src) < length:
        raise ValueError("invalid packet addr")
    (port,) = struct.unpack(">H", src[length - 2:length])
    return typ, (_ip_text(src[1:length - 2]), port)


def pack_packet_addr(host: str, port: int) -> bytes:
    """Encode an IP address and port as a packet address."""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise ValueError("invalid IP") from None
    tag = 1 if ip.version == 4 else 2
    return bytes([tag]) + ip.packed + struct.pack(">H", port & 0xFFFF)