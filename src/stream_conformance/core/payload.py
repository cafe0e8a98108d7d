"""Random message payloads and their canonical serialization."""

from __future__ import annotations

import json
import random
import string
from typing import Any

_ALPHANUMERIC = string.ascii_letters + string.digits


def generate_payload(rng: random.Random | None = None) -> dict[str, Any]:
    """Generate a fresh random payload.

    Args:
        rng: Random source (defaults to the module-level generator)

    Returns:
        Payload with string, integer, float and array members
    """
    rng = rng or random
    return {
        "string-key": "".join(rng.choice(_ALPHANUMERIC) for _ in range(10)),
        "integer-key": rng.randrange(100),
        "double-key": rng.random(),
        "array-key": [12, 34, -4],
    }


def serialize_payload(payload: Any) -> str:
    """Serialize a payload so that equal content gives equal strings."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def canonicalize(serialized: str) -> str:
    """Re-serialize a payload produced elsewhere.

    Agents in other runtimes format JSON their own way. Text that is not
    JSON is returned unchanged.
    """
    try:
        return serialize_payload(json.loads(serialized))
    except json.JSONDecodeError:
        return serialized
