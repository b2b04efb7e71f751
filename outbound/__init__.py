"""Proxy building blocks over byte streams: ShadowsocksR obfuscation and protocol layers, and VMess AEAD framing."""

__version__ = "0.1.0"