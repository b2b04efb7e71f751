"""ShadowsocksR obfuscation layers, protocol layers and the stream wrappers that apply them."""