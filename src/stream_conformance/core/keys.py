"""Key material and agent identities.

Identities are content-derived addresses: the last 20 bytes of the SHA-256
digest of the agent's private key, hex encoded with a ``0x`` prefix. They
are opaque to everything except the ledger, which compares them normalized.
"""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any


def generate_private_key() -> str:
    """Return a fresh 32-byte private key as hex."""
    return secrets.token_hex(32)


def address_from_private_key(private_key: str) -> str:
    """Derive the stable address of a private key."""
    key = private_key[2:] if private_key.startswith("0x") else private_key
    digest = hashlib.sha256(bytes.fromhex(key)).hexdigest()
    return "0x" + digest[-40:]


def normalize_identity(identity: str) -> str:
    """Normalize an identity for comparison.

    Transports may change the casing of addresses (checksummed vs lower
    case), so every lookup goes through this.
    """
    return identity.strip().lower()


@dataclass(frozen=True)
class GroupKey:
    """Symmetric key material for a stream."""

    id: str
    """Key identifier carried in message envelopes"""

    hex: str
    """Key bytes as hex"""

    created_at: int
    """Epoch milliseconds"""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "hex": self.hex, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GroupKey:
        return cls(id=data["id"], hex=data["hex"], created_at=data.get("created_at", 0))


class KeyProvider:
    """Hands out fresh group keys on request."""

    def generate_group_key(self) -> GroupKey:
        return GroupKey(
            id=uuid.uuid4().hex,
            hex=secrets.token_hex(32),
            created_at=int(time.time() * 1000),
        )
