"""Publish scheduler - starts, tracks and stops the publishers of a run."""

from __future__ import annotations

import random
import threading

from ..agents.base import PublisherAgent
from ..core.context import RunContext
from ..exceptions import PublishError


def draw_interval(rng: random.Random, min_interval: float, max_interval: float) -> float:
    """Draw a publisher's interval once, uniformly from [min, max).

    A degenerate range returns its single value.
    """
    if max_interval <= min_interval:
        return min_interval
    value = rng.uniform(min_interval, max_interval)
    # uniform() may return the upper bound through rounding
    return value if value < max_interval else min_interval


class PublishScheduler:
    """Runs every publisher on its own independent timer.

    Each publisher is registered in the ledger when it is added, before it
    can publish anything. Its publish events are recorded synchronously on
    the publisher's own thread. The first publish error is kept in
    ``failure`` for the run controller to act on.
    """

    def __init__(self, context: RunContext):
        self.context = context
        self.publishers: list[PublisherAgent] = []
        self._failure: PublishError | None = None
        self._failure_lock = threading.Lock()
        self._started = False

    def add(self, publisher: PublisherAgent) -> None:
        ledger = self.context.ledger
        record_sent = self.context.config.test_correctness
        ledger.register_publisher(
            publisher.identity,
            publisher.implementation_label,
            publisher.max_messages or None,
        )
        if record_sent:
            publisher.on_published(
                lambda publisher_id, payload, timestamp: ledger.record_sent(publisher_id, payload, timestamp)
            )
        publisher.on_error(self._on_error)
        self.publishers.append(publisher)
        self.context.logger.info(
            "Added %s (interval %.3fs)", publisher.describe(), publisher.interval
        )

    def _on_error(self, error: BaseException) -> None:
        if not isinstance(error, PublishError):
            wrapped = PublishError(str(error))
            wrapped.__cause__ = error
            error = wrapped
        with self._failure_lock:
            if self._failure is None:
                self._failure = error
        self.context.logger.error("Publish failure: %s", error)

    @property
    def failure(self) -> PublishError | None:
        with self._failure_lock:
            return self._failure

    def start_all(self) -> None:
        """Start every publisher.

        Raises:
            AgentStartError: If a publisher fails to start
        """
        self._started = True
        for publisher in self.publishers:
            publisher.start()

    def all_ready(self) -> bool:
        """Non-blocking check that every publisher has finished its bound."""
        return self._started and all(p.is_ready for p in self.publishers)

    def stop_all(self) -> None:
        """Stop every publisher, logging (not raising) individual stop errors."""
        for publisher in self.publishers:
            try:
                publisher.stop()
            except Exception as e:
                self.context.logger.error("Error stopping %s: %s", publisher.describe(), e)

    def published_counts(self) -> dict[str, int]:
        return {p.identity: p.published_count for p in self.publishers}
