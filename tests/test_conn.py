import os

import pytest

from outbound.vmess.addr import SEQ_PACKET_MAGIC_ADDRESS, Metadata, MetadataType, new_server_metadata
from outbound.vmess.aead import resp_header
from outbound.vmess.conn import VMessConn, generate_chunk_nonce
from outbound.vmess.ids import ID

CMD_KEY = ID("b831381d-6324-4d53-ad4f-8cda48b30811").cmd_key()


class _Duplex:
    def __init__(self, inbound: bytearray, outbound: bytearray) -> None:
        self.inbound = inbound
        self.outbound = outbound
        self.closed = False

    def read(self, size: int) -> bytes:
        out = bytes(self.inbound[:size])
        del self.inbound[:size]
        return out

    def write(self, data: bytes) -> int:
        self.outbound += data
        return len(data)

    def close(self) -> None:
        self.closed = True


def _pair(metadata: Metadata, dial_tgt: str):
    c2s, s2c = bytearray(), bytearray()
    client = VMessConn(_Duplex(s2c, c2s), metadata, dial_tgt, CMD_KEY)
    eauth_id = bytes(c2s[:16])
    del c2s[:16]
    server = VMessConn(_Duplex(c2s, s2c), new_server_metadata(CMD_KEY, eauth_id), "", CMD_KEY)
    return client, server, c2s, s2c


def _tcp_metadata(cipher="aes-128-gcm", network="tcp"):
    return Metadata(
        type=MetadataType.DOMAIN, hostname="example.com", port=443, cipher=cipher, is_client=True, network=network
    )


def test_generate_chunk_nonce_counts_from_zero():
    gen = generate_chunk_nonce(bytes(range(16)), 12)
    assert next(gen) == b"\x00\x00" + bytes(range(2, 12))
    second = next(gen)
    assert second[:2] == b"\x00\x01"
    assert second[2:] == bytes(range(2, 12))


def test_generate_chunk_nonce_wraps():
    gen = generate_chunk_nonce(bytes(16), 12)
    for _ in range(65536):
        next(gen)
    assert next(gen)[:2] == b"\x00\x00"


@pytest.mark.parametrize("cipher", ["aes-128-gcm", "chacha20-poly1305"])
def test_tcp_round_trip(cipher):
    client, server, _, _ = _pair(_tcp_metadata(cipher), "example.com:443")
    assert client.write(b"hello") == 5
    assert server.read(1024) == b"hello"
    assert server.metadata.hostname == "example.com"
    assert server.metadata.port == 443
    assert server.metadata.network == "tcp"
    assert server.metadata.cipher == cipher
    assert server.dial_tgt == "example.com:443"
    assert server.write(b"world") == 5
    assert client.read(1024) == b"world"


def test_large_payload_and_partial_reads():
    client, server, _, _ = _pair(_tcp_metadata(), "example.com:443")
    data = os.urandom(40000)
    assert client.write(data) == len(data)
    first = server.read(3)
    assert first == data[:3]
    got = bytearray(first)
    while len(got) < len(data):
        chunk = server.read(65536)
        assert chunk
        got += chunk
    assert bytes(got) == data


def test_empty_write_signals_end_of_stream():
    client, server, _, _ = _pair(_tcp_metadata(), "example.com:443")
    client.write(b"a")
    assert client.write(b"") == 0
    assert server.read(10) == b"a"
    assert server.read(10) == b""
    assert server.read(10) == b""


def test_udp_round_trip_uses_dial_target():
    metadata = Metadata(
        type=MetadataType.IPV4, hostname="1.2.3.4", port=53, cipher="aes-128-gcm", is_client=True, network="udp"
    )
    client, server, _, _ = _pair(metadata, "1.2.3.4:53")
    client.write(b"query")
    assert server.read(100) == b"query"
    assert server.metadata.hostname == "1.2.3.4"
    server.write(b"answer")
    assert client.read_from(100) == (b"answer", ("1.2.3.4", 53))


def test_packet_addr_round_trip():
    metadata = Metadata(
        type=MetadataType.DOMAIN,
        hostname=SEQ_PACKET_MAGIC_ADDRESS,
        port=0,
        cipher="aes-128-gcm",
        is_client=True,
        network="udp",
    )
    client, server, _, _ = _pair(metadata, "8.8.8.8:53")
    client.write(b"q")
    assert server.read(100) == b"q"
    assert server.metadata.is_packet_addr()
    client.write(b"q2")
    assert server.read_from(100) == (b"q2", ("8.8.8.8", 53))
    assert server.write_to(b"r", "8.8.8.8:53") == 1
    assert client.read_from(100) == (b"r", ("8.8.8.8", 53))


def test_tampered_request_header_is_refused():
    client, server, c2s, _ = _pair(_tcp_metadata(), "example.com:443")
    client.write(b"x")
    c2s[30] ^= 0xFF
    with pytest.raises(ValueError):
        server.read(10)
    with pytest.raises(ConnectionError):
        server.read(10)


def test_server_read_on_empty_stream():
    client, server, c2s, _ = _pair(_tcp_metadata(), "example.com:443")
    c2s.clear()
    with pytest.raises(EOFError):
        server.read(10)


def test_client_refuses_garbage_response_header():
    client, _, _, s2c = _pair(_tcp_metadata(), "example.com:443")
    s2c += bytes(18)
    with pytest.raises(ValueError):
        client.read(10)


def test_server_cannot_write_before_reading_request():
    _, server, _, _ = _pair(_tcp_metadata(), "example.com:443")
    with pytest.raises(ConnectionError):
        server.write(b"x")


def test_unsupported_network_write():
    client, _, _, _ = _pair(_tcp_metadata(network="mux"), "example.com:443")
    with pytest.raises(ValueError):
        client.write(b"x")


def test_unknown_cipher_is_refused():
    with pytest.raises(ValueError):
        VMessConn(_Duplex(bytearray(), bytearray()), _tcp_metadata(cipher="none"), "example.com:443", CMD_KEY)


def test_init_context_takes_cipher_from_security_byte():
    conn = VMessConn(_Duplex(bytearray(), bytearray()), new_server_metadata(CMD_KEY, bytes(16)), "", CMD_KEY)
    instruction = bytearray(41)
    instruction[35] = 3
    conn.init_context(bytes(instruction))
    assert conn.metadata.cipher == "aes-128-gcm"
    assert len(conn.response_body_key) == 16


def test_init_context_rejects_bad_security():
    conn = VMessConn(_Duplex(bytearray(), bytearray()), new_server_metadata(CMD_KEY, bytes(16)), "", CMD_KEY)
    instruction = bytearray(41)
    instruction[35] = 0x0F
    with pytest.raises(ValueError):
        conn.init_context(bytes(instruction))


def test_encrypt_response_header_length():
    client, server, _, _ = _pair(_tcp_metadata(), "example.com:443")
    client.write(b"x")
    server.read(10)
    sealed = server.encrypt_response_header(resp_header(0))
    assert len(sealed) == 2 + 16 + 4 + 16


def test_close_closes_stream():
    stream = _Duplex(bytearray(), bytearray())
    conn = VMessConn(stream, _tcp_metadata(), "example.com:443", CMD_KEY)
    conn.close()
    assert stream.closed is True