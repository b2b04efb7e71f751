"""Obfuscation layers that disguise the start of an SSR stream: plain, http_simple, http_post, random_head."""

from __future__ import annotations

import abc
import os
import secrets
from dataclasses import dataclass, field

from .common import set_crc32

REQUEST_PATH = (
    "", "",
    "login.php?redir=", "",
    "register.php?code=", "",
    "?keyword=", "",
    "search?src=typd&q=", "&lang=en",
    "s?ie=utf-8&f=8&rsv_bp=1&rsv_idx=1&ch=&bar=&wd=", "&rn=",
    "post.php?id=", "&goto=view.php",
)

REQUEST_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 6.3; WOW64; rv:40.0) Gecko/20100101 Firefox/40.0",
    "Mozilla/5.0 (Windows NT 6.3; WOW64; rv:40.0) Gecko/20100101 Firefox/44.0",
    "Mozilla/5.0 (Windows NT 6.1) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/41.0.2228.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/535.11 (KHTML, like Gecko) Ubuntu/11.10 Chromium/27.0.1453.93 Chrome/27.0.1453.93 Safari/537.36",
    "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:35.0) Gecko/20100101 Firefox/35.0",
    "Mozilla/5.0 (compatible; WOW64; MSIE 10.0; Windows NT 6.2)",
    "Mozilla/5.0 (Windows; U; Windows NT 6.1; en-US) AppleWebKit/533.20.25 (KHTML, like Gecko) Version/5.0.4 Safari/533.20.27",
    "Mozilla/4.0 (compatible; MSIE 7.0; Windows NT 6.3; Trident/7.0; .NET4.0E; .NET4.0C)",
    "Mozilla/5.0 (Windows NT 6.3; Trident/7.0; rv:11.0) like Gecko",
    "Mozilla/5.0 (Linux; Android 4.4; Nexus 5 Build/BuildID) AppleWebKit/537.36 (KHTML, like Gecko) Version/4.0 Chrome/30.0.0.0 Mobile Safari/537.36",
    "Mozilla/5.0 (iPad; CPU OS 5_0 like Mac OS X) AppleWebKit/534.46 (KHTML, like Gecko) Version/5.1 Mobile/9A334 Safari/7534.48.3",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 5_0 like Mac OS X) AppleWebKit/534.46 (KHTML, like Gecko) Version/5.1 Mobile/9A334 Safari/7534.48.3",
)

_BASE62 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"


@dataclass
class ServerInfo:
    """What an obfuscation layer knows about the server and the layers above it."""

    host: str = ""
    port: int = 0
    param: str = ""
    addr_len: int = 0
    key: bytes = field(default=b"", repr=False)
    iv_len: int = 0


class Obfs(abc.ABC):
    """An obfuscation layer: encode outgoing bytes, decode incoming bytes."""

    def __init__(self, server_info: ServerInfo | None = None) -> None:
        self.server_info = server_info if server_info is not None else ServerInfo()

    @abc.abstractmethod
    def encode(self, data: bytes) -> bytes:
        """Wrap outgoing data."""

    @abc.abstractmethod
    def decode(self, data: bytes) -> tuple[bytes, bool]:
        """Unwrap incoming data; the flag asks the caller to send an empty write back."""

    def get_data(self):
        """Shared state kept between connections; None for layers without any."""
        return None

    def set_data(self, data) -> None:
        """Adopt shared state; ignored by layers without any."""


class PlainObfs(Obfs):
    """Passes data through unchanged."""

    def encode(self, data: bytes) -> bytes:
        return data

    def decode(self, data: bytes) -> tuple[bytes, bool]:
        return data, False


class HttpSimpleObfs(Obfs):
    """Makes the first request look like an HTTP GET (http_simple) or POST (http_post)."""

    def __init__(self, method_get: bool = True, server_info: ServerInfo | None = None) -> None:
        super().__init__(server_info)
        self.method_get = method_get
        self.user_agent_index = secrets.randbelow(len(REQUEST_USER_AGENT))
        self.raw_trans_sent = False
        self.raw_trans_received = False

    @staticmethod
    def _boundary() -> str:
        return "".join(_BASE62[b % 62] for b in os.urandom(32))

    @staticmethod
    def _url_encode(data: bytes) -> str:
        return "".join(f"%{b:02x}" for b in data)

    def encode(self, data: bytes) -> bytes:
        if self.raw_trans_sent:
            return data
        info = self.server_info
        head_size = info.iv_len + info.addr_len
        if len(data) - head_size > 64:
            head = data[: head_size + secrets.randbelow(64)]
        else:
            head = data
        path_index = secrets.randbelow(len(REQUEST_PATH) // 2) * 2

        host = info.host
        custom_head = ""
        if info.param:
            custom_heads = info.param.split("#")[:2]
            param = info.param
            if len(custom_heads) > 1:
                custom_head = custom_heads[1]
                param = custom_heads[0]
            host = secrets.choice(param.split(",")).strip()

        method = "GET /" if self.method_get else "POST /"
        http_buf = (
            f"{method}{REQUEST_PATH[path_index]}{self._url_encode(head)}"
            f"{REQUEST_PATH[path_index + 1]} HTTP/1.1\r\nHost: {host}:{info.port}\r\n"
        )
        if custom_head:
            http_buf += custom_head.replace("\\n", "\r\n") + "\r\n\r\n"
        else:
            content_type = ""
            if not self.method_get:
                content_type = "Content-Type: multipart/form-data; boundary=" + self._boundary() + "\r\n"
            http_buf += (
                "User-Agent: " + REQUEST_USER_AGENT[self.user_agent_index] + "\r\n"
                "Accept: text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8\r\n"
                "Accept-Language: en-US,en;q=0.8\r\n"
                "Accept-Encoding: gzip, deflate\r\n"
                + content_type
                + "DNT: 1\r\n"
                "Connection: keep-alive\r\n"
                "\r\n"
            )
        self.raw_trans_sent = True
        return http_buf.encode() + bytes(data[len(head):])

    def decode(self, data: bytes) -> tuple[bytes, bool]:
        if self.raw_trans_received:
            return data, False
        pos = data.find(b"\r\n\r\n")
        if pos > 0:
            self.raw_trans_received = True
            return bytes(data[pos + 4:]), False
        return b"", False


def new_http_simple() -> HttpSimpleObfs:
    """An http_simple layer, disguising the first request as a GET."""
    return HttpSimpleObfs(method_get=True)


def new_http_post() -> HttpSimpleObfs:
    """An http_post layer, disguising the first request as a multipart POST."""
    return HttpSimpleObfs(method_get=False)


class RandomHeadObfs(Obfs):
    """Sends a random CRC-sealed header first and holds data back until an empty write."""

    def __init__(self, server_info: ServerInfo | None = None) -> None:
        super().__init__(server_info)
        self.raw_trans_sent = False
        self.raw_trans_received = False
        self.has_sent_header = False
        self.data_buffer = b""

    def encode(self, data: bytes) -> bytes:
        if self.raw_trans_sent:
            return data
        encoded = b""
        if self.has_sent_header:
            if data:
                self.data_buffer += bytes(data)
            else:
                encoded = self.data_buffer
                self.data_buffer = b""
                self.raw_trans_sent = True
        else:
            size = secrets.randbelow(96) + 8
            encoded = set_crc32(os.urandom(size), size)
            self.data_buffer = bytes(data)
        self.has_sent_header = True
        return encoded

    def decode(self, data: bytes) -> tuple[bytes, bool]:
        if self.raw_trans_received:
            return data, False
        self.raw_trans_received = True
        return data, True