import re

import pytest

from outbound.ssr.common import check_crc32
from outbound.ssr.obfs import (
    REQUEST_USER_AGENT,
    HttpSimpleObfs,
    Obfs,
    PlainObfs,
    RandomHeadObfs,
    ServerInfo,
    new_http_post,
    new_http_simple,
)


def _with_info(obfs, **kwargs):
    obfs.server_info = ServerInfo(**kwargs)
    return obfs


def test_obfs_is_abstract():
    with pytest.raises(TypeError):
        Obfs()


def test_plain_passes_through():
    p = PlainObfs()
    assert p.encode(b"hello") == b"hello"
    assert p.decode(b"world") == (b"world", False)
    assert p.get_data() is None


def test_http_simple_first_request_is_get():
    o = _with_info(new_http_simple(), host="example.com", port=80)
    out = o.encode(b"AB")
    assert out.startswith(b"GET /")
    assert b"%41%42" in out
    assert b"Host: example.com:80\r\n" in out
    assert b"Connection: keep-alive\r\n" in out
    assert out.endswith(b"\r\n\r\n")
    user_agent = re.search(rb"User-Agent: (.*?)\r\n", out).group(1).decode()
    assert user_agent in REQUEST_USER_AGENT
    assert b"Content-Type" not in out


def test_http_simple_later_writes_pass_through():
    o = _with_info(new_http_simple(), host="example.com", port=80)
    o.encode(b"first")
    assert o.encode(b"second") == b"second"


def test_http_post_has_boundary():
    o = _with_info(new_http_post(), host="example.com", port=443)
    out = o.encode(b"AB")
    assert out.startswith(b"POST /")
    m = re.search(rb"Content-Type: multipart/form-data; boundary=([A-Za-z0-9]*)\r\n", out)
    assert m is not None
    assert len(m.group(1)) == 32


def test_http_simple_long_data_tail_follows_header():
    data = b"x" * 200
    o = _with_info(new_http_simple(), host="example.com", port=80)
    out = o.encode(data)
    header, tail = out.split(b"\r\n\r\n", 1)
    assert len(tail) >= 200 - 63
    assert data.endswith(tail)
    head_len = 200 - len(tail)
    assert header.count(b"%78") == head_len


def test_http_simple_custom_head():
    o = _with_info(
        HttpSimpleObfs(),
        host="example.com",
        port=8080,
        param="a.example.com#X-Test: 1\\nX-Other: 2",
    )
    out = o.encode(b"AB")
    assert b"Host: a.example.com:8080\r\n" in out
    assert out.endswith(b"X-Test: 1\r\nX-Other: 2\r\n\r\n")
    assert b"User-Agent" not in out


def test_http_simple_host_list_from_param():
    o = _with_info(HttpSimpleObfs(), host="example.com", port=80, param="h1.example.com, h2.example.com")
    out = o.encode(b"AB")
    host = re.search(rb"Host: (.*?):80\r\n", out).group(1)
    assert host in (b"h1.example.com", b"h2.example.com")


def test_http_simple_decode_strips_response_header():
    o = new_http_simple()
    assert o.decode(b"HTTP/1.1 200 OK\r\n\r\npayload") == (b"payload", False)
    assert o.decode(b"more\r\n\r\ndata") == (b"more\r\n\r\ndata", False)


def test_http_simple_decode_without_separator_yields_nothing():
    o = new_http_simple()
    assert o.decode(b"partial header") == (b"", False)
    assert o.decode(b"\r\n\r\nbody") == (b"", False)
    assert o.decode(b"H\r\n\r\nbody") == (b"body", False)


def test_random_head_sequence():
    o = RandomHeadObfs()
    header = o.encode(b"abc")
    assert 8 <= len(header) <= 103
    assert check_crc32(header, len(header))
    assert o.encode(b"def") == b""
    assert o.encode(b"") == b"abcdef"
    assert o.encode(b"x") == b"x"


def test_random_head_decode_asks_for_send_back_once():
    o = RandomHeadObfs()
    assert o.decode(b"first") == (b"first", True)
    assert o.decode(b"second") == (b"second", False)