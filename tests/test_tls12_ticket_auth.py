import pytest

from outbound.ssr.common import (
    SSRError,
    TLS12TicketAuthHMACError,
    TLS12TicketAuthIncorrectMagicNumber,
    TLS12TicketAuthTooShortData,
)
from outbound.ssr.obfs import ServerInfo
from outbound.ssr.tls12_ticket_auth import TLS12TicketAuth, TLSAuthData, pack_data

FINISH = b"\x14\x03\x03\x00\x01\x01\x16\x03\x03\x00\x20"


def _auth(host="example.com", param=""):
    return TLS12TicketAuth(server_info=ServerInfo(host=host, port=443, param=param, key=b"k" * 16))


def _established():
    t = _auth()
    t.encode(b"")
    t.encode(b"")
    return t


def _unpack(stream):
    out = b""
    while stream:
        assert stream[:3] == b"\x17\x03\x03"
        size = int.from_bytes(stream[3:5], "big")
        out += stream[5:5 + size]
        stream = stream[5 + size:]
    return out


def test_pack_data_record():
    assert pack_data(b"abc") == b"\x17\x03\x03\x00\x03abc"


def test_client_hello_layout():
    t = _auth()
    hello = t.encode(b"hello")
    assert hello[:3] == b"\x16\x03\x01"
    assert int.from_bytes(hello[3:5], "big") == len(hello) - 5
    assert hello[5] == 1
    assert int.from_bytes(hello[7:9], "big") == len(hello) - 9
    assert hello[9:11] == b"\x03\x03"
    assert hello[43] == 0x20
    assert hello[44:76] == t.get_data().local_client_id
    assert b"example.com" in hello
    assert t.handshake_status == 1


def test_hello_auth_verifies_with_same_key():
    t = _auth()
    hello = t.encode(b"")
    assert t.decode(hello) == (b"", True)


def test_finish_carries_saved_data():
    t = _auth()
    t.encode(b"hello")
    assert t.encode(b"more") == b""
    finish = t.encode(b"")
    assert finish[:11] == FINISH
    assert len(finish[:43]) == 43
    assert _unpack(finish[43:]) == b"hellomore"
    assert t.handshake_status == 8


def test_established_small_and_large_encode():
    t = _established()
    assert t.encode(b"x" * 10) == pack_data(b"x" * 10)
    big = bytes(range(256)) * 20
    assert _unpack(t.encode(big)) == big


def test_established_decode_across_calls():
    t = _established()
    stream = pack_data(b"first") + pack_data(b"second")
    out1, back1 = t.decode(stream[:8])
    out2, back2 = t.decode(stream[8:])
    assert out1 + out2 == b"firstsecond"
    assert back1 is False and back2 is False


def test_decode_bad_magic():
    t = _established()
    with pytest.raises(TLS12TicketAuthIncorrectMagicNumber):
        t.decode(b"\x16\x03\x03\x00\x01a")


def test_decode_too_short():
    with pytest.raises(TLS12TicketAuthTooShortData):
        _auth().decode(b"\x00" * 20)


def test_decode_bad_hmac():
    with pytest.raises(TLS12TicketAuthHMACError):
        _auth().decode(b"\x00" * 80)


def test_numeric_host_without_param_has_no_sni():
    hello = _auth(host="10.0.0.1").encode(b"")
    assert b"10.0.0.1" not in hello


def test_param_hosts_used():
    hello = _auth(param="a.example.com, b.example.com").encode(b"")
    assert b"a.example.com" in hello or b"b.example.com" in hello


def test_data_is_shared_and_settable():
    t = _auth()
    first = t.get_data()
    assert t.get_data() is first
    assert len(first.local_client_id) == 32
    t.set_data("ignored")
    assert t.get_data() is first
    other = TLSAuthData()
    t.set_data(other)
    assert t.get_data() is other


def test_unexpected_status():
    t = _auth()
    t.handshake_status = 5
    with pytest.raises(SSRError):
        t.encode(b"data")