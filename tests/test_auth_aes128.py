import base64
import struct

import pytest
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from outbound.ssr.auth_aes128 import new_auth_aes128_md5, new_auth_aes128_sha1
from outbound.ssr.common import (
    AuthAES128DataLengthError,
    AuthAES128IncorrectChecksum,
    AuthAES128IncorrectHMAC,
    evp_bytes_to_key,
    hmac_md5,
    md5_sum,
    sha1_sum,
)
from outbound.ssr.protocol import AuthData, ProtocolServerInfo, new_protocol

KEY = b"secret"
IV = bytes(16)
PARAM = "7:secret"


def _make(factory=new_auth_aes128_md5, param=PARAM):
    proto = factory()
    proto.set_data(proto.get_data())
    proto.init_with_server_info(ProtocolServerInfo(param=param, key=KEY, iv=IV))
    return proto


def _streaming(factory=new_auth_aes128_md5):
    proto = _make(factory)
    proto.has_sent_header = True
    return proto


def _decrypt_block(user_key, salt, block):
    aes_key = evp_bytes_to_key(base64.b64encode(user_key).decode() + salt, 16)
    decryptor = Cipher(algorithms.AES(aes_key), modes.CBC(bytes(16))).decryptor()
    return decryptor.update(bytes(block)) + decryptor.finalize()


def test_user_from_param():
    proto = _make()
    assert proto.uid == b"\x07\x00\x00\x00"
    assert proto.user_key == md5_sum(b"secret")
    sha = _make(new_auth_aes128_sha1)
    assert sha.user_key == sha1_sum(b"secret")


@pytest.mark.parametrize("param", ["", "secret", "-1:secret", "x:secret"])
def test_user_falls_back_to_key(param):
    proto = _make(param=param)
    assert proto.user_key == KEY
    assert len(proto.uid) == 4


@pytest.mark.parametrize("factory", [new_auth_aes128_md5, new_auth_aes128_sha1])
@pytest.mark.parametrize("size", [1, 500, 1000, 1300, 10000])
def test_frames_round_trip(factory, size):
    payload = bytes(i % 253 for i in range(size))
    encoded = _streaming(factory).encode(payload)
    decoded, consumed = _make(factory).decode(encoded)
    assert decoded == payload
    assert consumed == len(encoded)


def test_many_writes_keep_ids_in_step():
    enc = _streaming()
    dec = _make()
    received = b""
    for i in range(8):
        encoded = enc.encode(bytes([i]) * 50)
        decoded, consumed = dec.decode(encoded)
        assert consumed == len(encoded)
        received += decoded
    assert received == b"".join(bytes([i]) * 50 for i in range(8))


def test_partial_frame_waits_for_more():
    encoded = _streaming().encode(b"abcdef")
    assert _make().decode(encoded[:-1]) == (b"", 0)


def test_bad_length_hmac_raises():
    encoded = bytearray(_streaming().encode(b"abcdef"))
    encoded[2] ^= 0xFF
    with pytest.raises(AuthAES128IncorrectHMAC):
        _make().decode(bytes(encoded))


def test_bad_checksum_raises():
    encoded = bytearray(_streaming().encode(b"abcdef"))
    encoded[-1] ^= 0xFF
    with pytest.raises(AuthAES128IncorrectChecksum):
        _make().decode(bytes(encoded))


def test_bad_length_raises():
    proto = _make()
    head = b"\x05\x00"
    key = proto.user_key + struct.pack("<I", 1)
    frame = head + hmac_md5(key, head)[:2] + b"\x00\x00"
    with pytest.raises(AuthAES128DataLengthError):
        proto.decode(frame)


def test_auth_header_layout():
    proto = _make()
    payload = bytes(range(100)) * 15
    out = proto.encode(payload)
    assert out[1:7] == hmac_md5(IV + KEY, out[0:1])[:6]
    assert out[7:11] == proto.uid
    assert out[27:31] == hmac_md5(IV + KEY, out[7:27])[:4]
    plain = _decrypt_block(proto.user_key, "auth_aes128_md5", out[11:27])
    header_len, rand_length = struct.unpack_from("<HH", plain, 12)
    auth = proto.get_data()
    assert plain[4:8] == auth.client_id[:4]
    assert struct.unpack_from("<I", plain, 8)[0] == auth.connection_id
    head = out[:header_len]
    data_offset = rand_length + 31
    assert head[data_offset:-4] == payload[:1200]
    assert head[-4:] == hmac_md5(proto.user_key, head[:-4])[:4]
    decoded, consumed = _make().decode(out[header_len:])
    assert decoded == payload[1200:]
    assert consumed == len(out) - header_len


def test_connection_id_shared_between_connections():
    shared = AuthData()
    first = _make()
    first.set_data(shared)
    first.encode(b"abc")
    client_id = shared.client_id
    connection_id = shared.connection_id
    second = _make()
    second.set_data(shared)
    second.encode(b"abc")
    assert len(client_id) == 8
    assert shared.client_id == client_id
    assert shared.connection_id == connection_id + 1


def test_packet_round_trip():
    proto = _make(param="")
    packet = proto.encode_packet(b"datagram")
    assert packet[:8] == b"datagram"
    assert proto.decode_packet(packet) == b"datagram" + proto.uid


def test_packet_errors():
    proto = _make(param="")
    with pytest.raises(AuthAES128DataLengthError):
        proto.decode_packet(b"abc")
    packet = bytearray(proto.encode_packet(b"datagram"))
    packet[0] ^= 0xFF
    with pytest.raises(AuthAES128IncorrectChecksum):
        proto.decode_packet(bytes(packet))


def test_registry_builds_both_variants():
    assert new_protocol("AUTH_AES128_SHA1").salt == "auth_aes128_sha1"
    assert new_protocol("auth_aes128_md5").salt == "auth_aes128_md5"