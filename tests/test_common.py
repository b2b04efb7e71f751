import hashlib
import struct
import zlib

from outbound.ssr.common import (
    AuthAES128PosOutOfRange,
    AuthChainIncorrectHMAC,
    AuthSHA1v4CRC32Error,
    Shift128Plus,
    SSRError,
    TLS12TicketAuthHMACError,
    calc_adler32,
    calc_crc32,
    check_adler32,
    check_crc32,
    evp_bytes_to_key,
    hmac_md5,
    hmac_sha1,
    md5_sum,
    set_crc32,
    sha1_sum,
)

import pytest


def test_shift128plus_first_value_from_unit_seed():
    ctx = Shift128Plus()
    ctx.init_from_bin(b"\x01")
    assert ctx.next() == 0x800041


def test_shift128plus_zero_seed_stays_zero():
    ctx = Shift128Plus()
    ctx.init_from_bin(b"")
    assert [ctx.next() for _ in range(5)] == [0] * 5


def test_shift128plus_is_deterministic_and_64_bit():
    seed = bytes(range(200, 216))
    a, b = Shift128Plus(), Shift128Plus()
    a.init_from_bin(seed)
    b.init_from_bin(seed)
    values = [a.next() for _ in range(100)]
    assert values == [b.next() for _ in range(100)]
    assert all(0 <= v < 2**64 for v in values)


def test_shift128plus_datalen_seeding_matches_manual_seed():
    seed = bytes(range(1, 17))
    a = Shift128Plus()
    a.init_from_bin_datalen(seed, 300)
    b = Shift128Plus()
    b.init_from_bin(struct.pack("<H", 300) + seed[2:])
    for _ in range(4):
        b.next()
    assert [a.next() for _ in range(5)] == [b.next() for _ in range(5)]


def test_adler32_known_value():
    assert calc_adler32(b"Wikipedia") == 0x11E60398


def test_adler32_matches_reference_on_long_input():
    data = bytes(range(256)) * 50
    assert calc_adler32(data) == zlib.adler32(data)
    assert calc_adler32(b"") == zlib.adler32(b"")


def test_check_adler32_accepts_valid_and_rejects_corrupt():
    data = b"some payload bytes"
    buf = data + struct.pack("<I", calc_adler32(data))
    assert check_adler32(buf, len(buf))
    corrupt = b"X" + buf[1:]
    assert not check_adler32(corrupt, len(corrupt))


def test_check_adler32_uses_only_prefix():
    data = b"abc"
    buf = data + struct.pack("<I", calc_adler32(data)) + b"trailing"
    assert check_adler32(buf, 7)


def test_crc32_matches_reference():
    data = b"123456789extra"
    assert calc_crc32(data, 9) == zlib.crc32(b"123456789")


def test_crc32_rejects_length_beyond_data():
    with pytest.raises(ValueError):
        calc_crc32(b"abc", 4)


def test_set_crc32_round_trip():
    buf = bytes(20)
    out = set_crc32(bytes(range(20)), 20)
    assert len(out) == 20
    assert out[:16] == bytes(range(16))
    assert check_crc32(out, 20)
    assert not check_crc32(buf, 20)


def test_set_crc32_keeps_bytes_after_length():
    out = set_crc32(b"abcdefgh" + b"TAIL", 8)
    assert out.endswith(b"TAIL")
    assert check_crc32(out, 8)


def test_digests_and_hmacs():
    assert md5_sum(b"x") == hashlib.md5(b"x").digest()
    assert sha1_sum(b"x") == hashlib.sha1(b"x").digest()
    assert len(hmac_md5(b"k", b"d")) == 16
    assert len(hmac_sha1(b"k", b"d")) == 20
    assert hmac_md5(b"k", b"d") != hmac_md5(b"k2", b"d")


def test_evp_bytes_to_key_prefix_and_first_block():
    key16 = evp_bytes_to_key("secret", 16)
    key32 = evp_bytes_to_key(b"secret", 32)
    assert key16 == hashlib.md5(b"secret").digest()
    assert key32[:16] == key16
    assert key32[16:] == hashlib.md5(key16 + b"secret").digest()
    assert len(evp_bytes_to_key("secret", 20)) == 20


def test_error_messages():
    assert str(AuthSHA1v4CRC32Error()) == "auth_sha1_v4 post decrypt data crc32 error"
    assert str(TLS12TicketAuthHMACError()) == "tls1.2_ticket_auth hmac verifying failed"
    assert str(AuthChainIncorrectHMAC("custom")) == "custom"


def test_errors_share_base_class():
    err = AuthAES128PosOutOfRange()
    assert isinstance(err, SSRError)
    assert str(err) == "auth_aes128_* post decrypt pos out of range"