"""VMess AEAD headers, chunked bodies, packet addresses, user ids and replay filtering."""