# outbound

Wire-level building blocks for proxy connections:

- **ShadowsocksR** obfuscation layers (`plain`, `http_simple`, `http_post`,
  `random_head`, `tls1.2_ticket_auth`, `tls1.2_ticket_fastauth`) and protocol
  layers (`origin`, `auth_sha1_v4`, `auth_aes128_md5`, `auth_aes128_sha1`,
  `auth_chain_a`, `auth_chain_b`).
- **VMess** AEAD request and response headers, chunk length masking, padding,
  packet addresses, user ids and a replay filter.

Everything works on objects you hand it. A "stream" is any object with
`read(size) -> bytes` (returning `b""` at end of stream), `write(data)` and
`close()`.

## Installing

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## ShadowsocksR

### Obfuscation

Obfuscation layers are looked up by name (case-insensitively) with
`outbound.ssr.obfs_conn.get_obfs`, which returns an `ObfsConstructor` holding
a `create` callable and the per-packet `overhead`. An unknown name raises
`ValueError`.

```python
from outbound.ssr.obfs import ServerInfo
from outbound.ssr.obfs_conn import ObfsConn, get_obfs

constructor = get_obfs("http_simple")
obfs = constructor.create()
obfs.server_info = ServerInfo(host="example.com", port=80)
conn = ObfsConn(stream, obfs)
conn.set_cipher_info(iv_len=16, key=stream_key)   # required before the first write
conn.write(b"payload")
reply = conn.read(4096)
```

`ObfsConn.set_addr_len` overrides the address length told to the layer
(30 by default). When a layer asks for it (as `random_head` and
`tls1.2_ticket_auth` do during their handshakes), `ObfsConn.read` sends an
empty write back by itself.

`ObfsDialer(next_dialer, ObfsParam(...))` does the same for you: its
`dial("tcp", addr)` calls `next_dialer.dial(network, addr)` and wraps the
result in an `ObfsConn`; `dial("udp", addr)` passes straight through. Its
`obfs_overhead` property reports the layer's overhead.

The layers can also be used directly: `PlainObfs`, `HttpSimpleObfs`
(`new_http_simple()` / `new_http_post()`), `RandomHeadObfs` in
`outbound.ssr.obfs`, and `TLS12TicketAuth` in `outbound.ssr.tls12_ticket_auth`.
Each has `encode(data) -> bytes` and `decode(data) -> (bytes, send_back)`.

### Protocols

Protocol layers are created by name with `outbound.ssr.protocol.new_protocol`
and initialised with a `ProtocolServerInfo`:

```python
from outbound.ssr.protocol import ProtocolConn, ProtocolServerInfo, new_protocol

proto = new_protocol("auth_aes128_md5")
proto.set_data(proto.get_data())
proto.init_with_server_info(ProtocolServerInfo(
    param="", tcp_mss=1460, iv=stream_iv, key=stream_key, addr_len=7,
    overhead=proto.overhead,
))
wire = proto.encode(b"hello")
payload, consumed = proto.decode(received)

conn = ProtocolConn(stream, proto)   # buffers partial frames on read
```

Every layer also has `encode_packet(data)` and `decode_packet(data)` for
single datagrams. `get_data()` / `set_data()` carry the client identity
(`AuthData`) that should be shared between connections to one server.

Helpers shared by the layers — `calc_adler32`, `calc_crc32`, `set_crc32`,
the `Shift128Plus` generator, `evp_bytes_to_key` and HMAC/digest shortcuts —
are in `outbound.ssr.common`.

Decoding failures raise subclasses of `outbound.ssr.common.SSRError`, such as
`AuthAES128IncorrectHMAC`, `AuthChainDataLengthError` or
`TLS12TicketAuthIncorrectMagicNumber`.

## VMess

A client connection writes its encrypted request header as soon as it is
created:

```python
from outbound.vmess.addr import Metadata, MetadataType
from outbound.vmess.conn import VMessConn
from outbound.vmess.ids import ID

user = ID("00000000-0000-4000-8000-000000000001")
meta = Metadata(type=MetadataType.DOMAIN, hostname="example.com", port=443,
                cipher="aes-128-gcm", network="tcp", is_client=True)
conn = VMessConn(stream, meta, "example.com:443", user.cmd_key())
conn.write(b"GET / HTTP/1.1\r\n\r\n")
data = conn.read(4096)
conn.write(b"")        # sends the end-of-stream chunk
conn.close()
```

With `network="udp"` each write is one sealed packet; `write_to(data, addr)`
and `read_from(size)` handle packet-address mode (hostname
`sp.packet-addr.v2fly.arpa`), where each packet carries its own IP address
and port.

On the server side, the caller reads the 16-byte EAuthID from the stream,
checks it with `outbound.vmess.aead.auth_eauth_id(cmd_key, eauth_id,
replay_filter, start_timestamp)` (which raises `AuthError` or
`ReplayAttackError`), and then builds the connection from
`new_server_metadata(cmd_key, eauth_id)`. The first `read` decrypts the
request, fills in the metadata and `dial_tgt`; the first `write` sends the
response header.

Other pieces:

- `outbound.vmess.aead`: `Cipher`, `kdf`, `make_eauth_id`,
  `req_instruction_data`, `encrypt_req_header`, `new_aead`,
  `ShakeSizeParser`, `PlainChunkSizeParser`, `PlainPaddingGenerator`.
- `outbound.vmess.addr`: `Metadata`, `MetadataType`,
  `extract_packet_addr`, `pack_packet_addr` and the byte mappings for
  address types and networks.
- `outbound.vmess.ids`: `ID` and `new_alter_ids`.
- `outbound.vmess.replay_filter.ReplayFilter`: refuses ids seen within the
  last one to two intervals.

## What this package does not do

It opens no sockets and has no command-line program. There are no dialers
that make network connections, no TLS, WebSocket, gRPC or HTTP transports,
no stream ciphers for the Shadowsocks layer below the SSR protocols (you
supply its IV and key), and no UDP packet connection wrapping the SSR
protocol layers. You own the sockets and the layering.