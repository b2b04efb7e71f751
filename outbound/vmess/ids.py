"""VMess user ids and the command keys derived from them."""

from __future__ import annotations

import hashlib
import uuid as _uuid

_CMD_KEY_SALT = b"c48619fe-8f02-49e0-b9e9-edf763e17e21"
_NEXT_ID_SALT = b"16167dc8-16b6-4e6d-b8bb-65dd68113a81"
_NEXT_ID_RETRY_SALT = b"533eff8a-4113-4b10-b5ce-0f5d76b98cd2"


class ID:
    """A user id (a UUID) together with its command key."""

    def __init__(self, value: _uuid.UUID | str) -> None:
        if isinstance(value, _uuid.UUID):
            self.uuid = value
        else:
            self.uuid = _uuid.UUID(value)
        self._cmd_key = hashlib.md5(self.uuid.bytes + _CMD_KEY_SALT).digest()

    def cmd_key(self) -> bytes:
        return self._cmd_key

    def __bytes__(self) -> bytes:
        return self.uuid.bytes

    def __str__(self) -> str:
        return str(self.uuid)

    def __repr__(self) -> str:
        return "ID(%r)" % str(self.uuid)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ID) and self.uuid == other.uuid

    def __hash__(self) -> int:
        return hash(self.uuid)


def _next_uuid(value: _uuid.UUID) -> _uuid.UUID:
    digest = hashlib.md5(value.bytes + _NEXT_ID_SALT)
    while True:
        candidate = digest.digest()
        if candidate != value.bytes:
            return _uuid.UUID(bytes=candidate)
        digest.update(_NEXT_ID_RETRY_SALT)


def new_alter_ids(primary: ID, count: int) -> list[ID]:
    """The chain of count alternative ids derived from primary."""
    ids: list[ID] = []
    prev = primary.uuid
    for _ in range(count):
        prev = _next_uuid(prev)
        ids.append(ID(prev))
    return ids