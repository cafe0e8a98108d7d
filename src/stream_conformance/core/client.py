"""The stream client capability the harness drives.

The pub/sub client library itself is external. Native agents talk to it
through this interface; implement StreamClient to plug in a real client.
The in-memory implementation lives in ``stream_conformance.clients.memory``.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from ..exceptions import DecryptionError
from .keys import GroupKey
from .payload import serialize_payload
from .protocol import ResendDirective


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Operation:
    """Stream permission operations."""

    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class SecurityOptions:
    """Signing and encryption setup of one client."""

    sign: bool = False
    """Sign published messages"""

    verify_signatures: bool = False
    """Reject unsigned messages on receive"""

    shared_group_key: GroupKey | None = None
    """Key known up front (shared-key topologies, or a publisher's own key)"""

    key_exchange: bool = False
    """Request unknown keys from the publisher"""


@dataclass(frozen=True)
class StreamMessage:
    """A message as delivered to a subscriber."""

    stream_id: str
    publisher_id: str
    sequence_number: int
    timestamp: int
    content: Any
    group_key_id: str | None = None
    next_group_key: GroupKey | None = None
    signature: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def serialized_content(self) -> str:
        return serialize_payload(self.content)

    @property
    def encrypted(self) -> bool:
        return self.group_key_id is not None


MessageHandler = Callable[[StreamMessage], None]
FailureHandler = Callable[[DecryptionError], None]


class Subscription(ABC):
    """Handle returned by StreamClient.subscribe()."""

    @property
    @abstractmethod
    def stream_id(self) -> str:
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop delivery to this subscription."""
        pass


class StreamClient(ABC):
    """Interface of a pub/sub client as used by native agents."""

    @property
    @abstractmethod
    def identity(self) -> str:
        """Stable opaque address of this client."""
        pass

    @abstractmethod
    def connect(self) -> None:
        """Connect to the network. Must raise on failure."""
        pass

    @abstractmethod
    def disconnect(self) -> None:
        pass

    @abstractmethod
    def create_stream(self, name: str) -> str:
        """Create a stream owned by this client and return its id."""
        pass

    @abstractmethod
    def grant_permission(self, stream_id: str, identity: str, operation: str) -> None:
        pass

    @abstractmethod
    def publish(
        self,
        stream_id: str,
        content: Any,
        timestamp: int | None = None,
        group_key: GroupKey | None = None,
    ) -> None:
        """Publish one message.

        Args:
            stream_id: Target stream
            content: JSON-serializable payload
            timestamp: Message timestamp in epoch ms (defaults to now)
            group_key: New key to rotate to, announced with this message
        """
        pass

    @abstractmethod
    def revoke(self, stream_id: str) -> None:
        """Re-key the stream and re-issue the key to current subscribers."""
        pass

    @abstractmethod
    def subscribe(
        self,
        stream_id: str,
        on_message: MessageHandler,
        on_failure: FailureHandler,
        resend: ResendDirective | None = None,
    ) -> Subscription:
        pass


ClientFactory = Callable[[SecurityOptions], StreamClient]
"""Builds a client for the given security setup."""
