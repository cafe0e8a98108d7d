"""Core data structures: resend directives, keys, payloads, client capability and ledger."""

from .client import (
    ClientFactory,
    Operation,
    SecurityOptions,
    StreamClient,
    StreamMessage,
    Subscription,
    now_ms,
)
from .context import RunContext
from .keys import GroupKey, KeyProvider, address_from_private_key, generate_private_key, normalize_identity
from .ledger import LedgerEntry, MessageLedger
from .payload import canonicalize, generate_payload, serialize_payload
from .protocol import AgentLine, LineKind, ResendDirective, ResendKind, parse_agent_line

__all__ = [
    "ClientFactory",
    "Operation",
    "SecurityOptions",
    "StreamClient",
    "StreamMessage",
    "Subscription",
    "now_ms",
    "RunContext",
    "GroupKey",
    "KeyProvider",
    "address_from_private_key",
    "generate_private_key",
    "normalize_identity",
    "LedgerEntry",
    "MessageLedger",
    "canonicalize",
    "generate_payload",
    "serialize_payload",
    "AgentLine",
    "LineKind",
    "ResendDirective",
    "ResendKind",
    "parse_agent_line",
]
