"""Subscription manager - starts subscribers now or after a delay.

Per subscriber:

    CREATED -> [DELAYED] -> STARTING -> ACTIVE -> STOPPED
                |                   \\-> FAILED
                \\-> CANCELLED (run stopped before the delayed start)

The ledger slot and the receive callback are wired when the subscriber is
added, before it is started, so the first message always has somewhere
to go.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum

from ..agents.base import SubscriberAgent
from ..core.context import RunContext


class SubscriberState(str, Enum):
    """Lifecycle state of a managed subscriber."""

    CREATED = "created"
    DELAYED = "delayed"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPED = "stopped"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ManagedSubscriber:
    """A subscriber and its lifecycle bookkeeping."""

    agent: SubscriberAgent
    state: SubscriberState = SubscriberState.CREATED
    delay: float | None = None
    """Total delay before start, in seconds (None = immediate)"""

    timer: threading.Timer | None = field(default=None, repr=False)
    error: BaseException | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    """Serializes start and stop of this subscriber"""


class SubscriptionManager:
    """Owns every subscriber of a run."""

    def __init__(self, context: RunContext):
        self.context = context
        self._subscribers: list[ManagedSubscriber] = []
        self._lock = threading.Lock()
        self._stopped = False

    def add(self, subscriber: SubscriberAgent, extra_delay: float | None = None) -> ManagedSubscriber:
        """Register a subscriber and start it now or later.

        Args:
            subscriber: The subscriber agent
            extra_delay: If given, start after network_setup_delay + extra_delay
                seconds instead of immediately

        Returns:
            The managed subscriber

        Raises:
            AgentStartError: If an immediate start fails
        """
        ledger = self.context.ledger
        ledger.register_subscriber(
            subscriber.identity,
            subscriber.implementation_label,
            subscriber.resend,
        )
        if self.context.config.test_correctness:
            subscriber_id = subscriber.identity
            subscriber.on_received(
                lambda publisher_id, payload, timestamp: ledger.record_received(
                    publisher_id, subscriber_id, payload, timestamp
                )
            )
        subscriber.on_failure(lambda reason: ledger.record_failure(subscriber.identity, reason))

        managed = ManagedSubscriber(agent=subscriber)
        with self._lock:
            self._subscribers.append(managed)

        if extra_delay is None:
            with managed.lock:
                self._start(managed)
            self.context.logger.info("Added %s", subscriber.describe())
        else:
            managed.delay = self.context.config.network_setup_delay + extra_delay
            managed.state = SubscriberState.DELAYED
            managed.timer = threading.Timer(managed.delay, self._start_delayed, args=(managed,))
            managed.timer.daemon = True
            managed.timer.start()
            self.context.logger.info(
                "Added %s, starting in %.2fs with resend %s",
                subscriber.describe(),
                managed.delay,
                subscriber.resend.to_json(),
            )
        return managed

    def _start(self, managed: ManagedSubscriber) -> None:
        # Caller holds managed.lock
        managed.state = SubscriberState.STARTING
        try:
            managed.agent.start()
        except Exception as e:
            managed.state = SubscriberState.FAILED
            managed.error = e
            self.context.ledger.mark_not_started(managed.agent.identity, str(e), failed=True)
            raise
        # After start: everything in history at subscribe time is before the join
        self.context.ledger.mark_joined(managed.agent.identity, self.context.clock())
        managed.state = SubscriberState.ACTIVE

    def _start_delayed(self, managed: ManagedSubscriber) -> None:
        with managed.lock:
            with self._lock:
                stopped = self._stopped
            if stopped or managed.state != SubscriberState.DELAYED:
                return
            try:
                self._start(managed)
            except Exception as e:
                # The run goes on; the reconciler reports the subscriber as not started
                self.context.logger.error("Delayed %s failed to start: %s", managed.agent.describe(), e)
                return
        self.context.logger.info("Started delayed %s", managed.agent.describe())

    def settled(self) -> bool:
        """True once no subscriber is waiting for or in the middle of its start."""
        return not any(
            m.state in (SubscriberState.DELAYED, SubscriberState.STARTING) for m in self.subscribers
        )

    def stop_all(self) -> None:
        """Cancel pending starts and stop every started subscriber.

        A start already in progress finishes first and the subscriber is
        then stopped, so no agent is left running after this returns.
        """
        with self._lock:
            self._stopped = True
            subscribers = list(self._subscribers)
        for managed in subscribers:
            if managed.timer is not None:
                managed.timer.cancel()
            with managed.lock:
                if managed.state == SubscriberState.DELAYED:
                    managed.state = SubscriberState.CANCELLED
                    self.context.ledger.mark_not_started(
                        managed.agent.identity, "run stopped before its delayed start"
                    )
                    self.context.logger.warning(
                        "Cancelled delayed start of %s", managed.agent.describe()
                    )
                    continue
                if managed.state == SubscriberState.ACTIVE:
                    try:
                        managed.agent.stop()
                    except Exception as e:
                        self.context.logger.error("Error stopping %s: %s", managed.agent.describe(), e)
                if managed.state not in (SubscriberState.FAILED, SubscriberState.CANCELLED):
                    managed.state = SubscriberState.STOPPED

    @property
    def subscribers(self) -> list[ManagedSubscriber]:
        with self._lock:
            return list(self._subscribers)

    def states(self) -> dict[str, SubscriberState]:
        return {m.agent.identity: m.state for m in self.subscribers}
