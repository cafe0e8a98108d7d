"""Publish strategies.

A strategy performs one publish for a publisher tick. Strategies are
pluggable and chosen per topology:

- default: fresh random payload, published with the client's current key
- rotating: every Nth tick also attaches a freshly generated group key
- rotating-revoking: like rotating, but every Mth tick (M a multiple of N)
  revokes instead, forcing current subscribers to be re-issued keys

Strategies hold configuration only; the tick counter is passed in, so one
instance can serve many publishers.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from ..core.client import StreamClient, now_ms
from ..core.keys import KeyProvider
from ..core.payload import generate_payload, serialize_payload
from ..exceptions import ConfigError


@dataclass(frozen=True)
class PublishedMessage:
    """Outcome of one successful publish."""

    payload: str
    """Serialized payload as recorded in the ledger"""

    timestamp: int
    """Message timestamp in epoch ms"""

    counter: int
    """Tick counter the message was published on"""

    rotated_key_id: str | None = None
    """Id of the key attached on this tick, if any"""

    revoked: bool = False
    """True if this tick revoked before publishing"""


class PublishStrategy(ABC):
    """Publishes one message per tick."""

    name: str = ""

    def __init__(
        self,
        payload_factory: Callable[[], Any] | None = None,
        clock: Callable[[], int] = now_ms,
        rng: random.Random | None = None,
    ):
        self._rng = rng or random.Random()
        self._payload_factory = payload_factory or (lambda: generate_payload(self._rng))
        self._clock = clock

    @abstractmethod
    def publish(self, client: StreamClient, stream_id: str, counter: int) -> PublishedMessage:
        """Publish one message.

        Args:
            client: Connected client of the publisher
            stream_id: Target stream
            counter: Tick counter, starting at 1

        Returns:
            The published message
        """
        pass

    def agent_arguments(self) -> list[str]:
        """Command-line arguments that select this strategy in an external agent."""
        return ["--publish-function", self.name]

    def _publish_plain(self, client: StreamClient, stream_id: str, counter: int) -> PublishedMessage:
        payload = self._payload_factory()
        timestamp = self._clock()
        client.publish(stream_id, payload, timestamp=timestamp)
        return PublishedMessage(serialize_payload(payload), timestamp, counter)


class DefaultStrategy(PublishStrategy):
    """Random payload, current key."""

    name = "default"

    def publish(self, client: StreamClient, stream_id: str, counter: int) -> PublishedMessage:
        return self._publish_plain(client, stream_id, counter)


class RotatingStrategy(PublishStrategy):
    """Attaches a new group key on every ``rotation_period``-th tick."""

    name = "rotating"

    def __init__(
        self,
        rotation_period: int,
        key_provider: KeyProvider | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        if rotation_period <= 0:
            raise ConfigError(f"rotation_period must be positive, got {rotation_period}")
        self.rotation_period = rotation_period
        self.key_provider = key_provider or KeyProvider()

    def publish(self, client: StreamClient, stream_id: str, counter: int) -> PublishedMessage:
        if counter % self.rotation_period == 0:
            return self._publish_rotated(client, stream_id, counter)
        return self._publish_plain(client, stream_id, counter)

    def _publish_rotated(self, client: StreamClient, stream_id: str, counter: int) -> PublishedMessage:
        payload = self._payload_factory()
        timestamp = self._clock()
        key = self.key_provider.generate_group_key()
        client.publish(stream_id, payload, timestamp=timestamp, group_key=key)
        return PublishedMessage(serialize_payload(payload), timestamp, counter, rotated_key_id=key.id)

    def agent_arguments(self) -> list[str]:
        return [*super().agent_arguments(), "--rotation-period", str(self.rotation_period)]


class RotatingRevokingStrategy(RotatingStrategy):
    """Rotates every N ticks and revokes every M ticks."""

    name = "rotating-revoking"

    def __init__(self, rotation_period: int, revocation_period: int, **kwargs: Any):
        super().__init__(rotation_period, **kwargs)
        if revocation_period <= 0 or revocation_period % rotation_period != 0:
            raise ConfigError(
                f"revocation_period ({revocation_period}) must be a positive multiple of "
                f"rotation_period ({rotation_period})"
            )
        self.revocation_period = revocation_period

    def publish(self, client: StreamClient, stream_id: str, counter: int) -> PublishedMessage:
        if counter % self.revocation_period == 0:
            client.revoke(stream_id)
            message = self._publish_plain(client, stream_id, counter)
            return PublishedMessage(message.payload, message.timestamp, counter, revoked=True)
        return super().publish(client, stream_id, counter)

    def agent_arguments(self) -> list[str]:
        return [*super().agent_arguments(), "--revocation-period", str(self.revocation_period)]


STRATEGIES: dict[str, type[PublishStrategy]] = {
    DefaultStrategy.name: DefaultStrategy,
    RotatingStrategy.name: RotatingStrategy,
    RotatingRevokingStrategy.name: RotatingRevokingStrategy,
}


def create_strategy(name: str, **options: Any) -> PublishStrategy:
    """Create a strategy by name.

    Raises:
        ConfigError: If the name is unknown
    """
    try:
        strategy_cls = STRATEGIES[name]
    except KeyError:
        known = ", ".join(sorted(STRATEGIES))
        raise ConfigError(f"Unknown publish strategy '{name}' (known: {known})") from None
    return strategy_cls(**options)
