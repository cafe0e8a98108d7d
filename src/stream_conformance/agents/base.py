"""Agent abstraction - uniform handles over publishing and subscribing participants.

An agent is tagged with its kind (native in-process client or external
process) and its role (publisher or subscriber). Everything downstream of
an agent, the ledger and the reconciler included, only sees identities and
payloads delivered through the event hooks, never the agent's kind.

Listeners must be registered before start(); they are called on the
agent's own delivery thread.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

from ..core.protocol import ResendDirective

PublishedListener = Callable[[str, str, int], None]
"""(publisher_id, payload, timestamp)"""

ReceivedListener = Callable[[str, str, int], None]
"""(publisher_id, payload, timestamp)"""

FailureListener = Callable[[str], None]
"""(reason)"""

ErrorListener = Callable[[BaseException], None]


class AgentKind(str, Enum):
    """Which implementation backs an agent."""

    NATIVE = "native"
    EXTERNAL = "external"


class AgentRole(str, Enum):
    """Capability of an agent."""

    PUBLISHER = "publisher"
    SUBSCRIBER = "subscriber"


class Agent(ABC):
    """Base class of all agents."""

    kind: AgentKind
    role: AgentRole

    def __init__(self, identity: str, label: str):
        """Initialize the agent.

        Args:
            identity: Stable address of the agent
            label: Implementation label used in diagnostics
        """
        self._identity = identity
        self._label = label

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def implementation_label(self) -> str:
        return self._label

    @abstractmethod
    def start(self) -> None:
        """Connect and begin operating. Must raise on failure."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Halt further events and release connections."""
        pass

    def describe(self) -> str:
        return f"{self._label} {self.role.value} {self._identity}"

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"


class PublisherAgent(Agent):
    """An agent that publishes on its own interval."""

    role = AgentRole.PUBLISHER

    def __init__(self, identity: str, label: str, interval: float, max_messages: int = 0):
        """Initialize the publisher.

        Args:
            identity: Stable address of the agent
            label: Implementation label
            interval: Seconds between publishes
            max_messages: Stop after this many messages (0 = never)
        """
        super().__init__(identity, label)
        self._interval = interval
        self.max_messages = max_messages
        self.published_count = 0
        self._published_listeners: list[PublishedListener] = []
        self._error_listeners: list[ErrorListener] = []

    @property
    def interval(self) -> float:
        return self._interval

    def on_published(self, listener: PublishedListener) -> None:
        self._published_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True once the publisher has nothing more to publish."""
        pass

    def _emit_published(self, payload: str, timestamp: int) -> None:
        # Listeners run first: a publisher counts as ready only once its
        # last message is recorded
        for listener in self._published_listeners:
            listener(self._identity, payload, timestamp)
        self.published_count += 1

    def _emit_error(self, error: BaseException) -> None:
        for listener in self._error_listeners:
            listener(error)


class SubscriberAgent(Agent):
    """An agent that receives messages from the stream."""

    role = AgentRole.SUBSCRIBER

    def __init__(self, identity: str, label: str, resend: ResendDirective | None = None):
        super().__init__(identity, label)
        self.resend = resend or ResendDirective.live()
        self.received_count = 0
        self._received_listeners: list[ReceivedListener] = []
        self._failure_listeners: list[FailureListener] = []

    def on_received(self, listener: ReceivedListener) -> None:
        self._received_listeners.append(listener)

    def on_failure(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def _emit_received(self, publisher_id: str, payload: str, timestamp: int) -> None:
        self.received_count += 1
        for listener in self._received_listeners:
            listener(publisher_id, payload, timestamp)

    def _emit_failure(self, reason: str) -> None:
        for listener in self._failure_listeners:
            listener(reason)
