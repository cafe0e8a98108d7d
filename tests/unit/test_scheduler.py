"""Tests for the publish scheduler and subscription manager."""

from __future__ import annotations

import random
import threading
import time
from unittest.mock import MagicMock

import pytest

from stream_conformance.agents.base import PublisherAgent, SubscriberAgent
from stream_conformance.core.context import RunContext
from stream_conformance.core.protocol import ResendDirective
from stream_conformance.exceptions import AgentStartError, PublishError
from stream_conformance.runner.subscriptions import SubscriberState, SubscriptionManager
from stream_conformance.scheduling.scheduler import PublishScheduler, draw_interval


class FakePublisher(PublisherAgent):
    """Publisher driven by the test."""

    def __init__(self, identity: str, max_messages: int = 3):
        super().__init__(identity, "fake", 0.01, max_messages)
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def publish(self, payload: str) -> None:
        self._emit_published(payload, 1000 + self.published_count)

    def fail(self, error: BaseException) -> None:
        self._emit_error(error)

    @property
    def is_ready(self) -> bool:
        return self.published_count >= self.max_messages


class FakeSubscriber(SubscriberAgent):
    """Subscriber driven by the test."""

    def __init__(self, identity: str, resend: ResendDirective | None = None, fail: bool = False):
        super().__init__(identity, "fake", resend)
        self.fail = fail
        self.started_at: float | None = None
        self.stopped = False

    def start(self) -> None:
        if self.fail:
            raise AgentStartError("cannot connect")
        self.started_at = time.monotonic()

    def stop(self) -> None:
        self.stopped = True

    def receive(self, publisher_id: str, payload: str) -> None:
        self._emit_received(publisher_id, payload, 0)


class BlockingSubscriber(FakeSubscriber):
    """Subscriber whose start blocks until the test releases it."""

    def __init__(self, identity: str):
        super().__init__(identity)
        self.entered = threading.Event()
        self.release = threading.Event()

    def start(self) -> None:
        self.entered.set()
        self.release.wait(5.0)
        super().start()


class TestDrawInterval:
    """Tests for interval drawing."""

    def test_within_range(self):
        """Draws fall in [min, max)."""
        rng = random.Random(1)
        values = [draw_interval(rng, 1.0, 2.0) for _ in range(1000)]
        assert all(1.0 <= v < 2.0 for v in values)

    def test_degenerate_range(self):
        """min == max returns that value."""
        assert draw_interval(random.Random(), 0.5, 0.5) == 0.5


class TestPublishScheduler:
    """Tests for PublishScheduler."""

    def test_add_registers_before_start(self, context: RunContext):
        """Adding a publisher registers its ledger slot and bound."""
        scheduler = PublishScheduler(context)
        publisher = FakePublisher("0xP1", max_messages=3)
        scheduler.add(publisher)
        assert context.ledger.registered_publishers() == ["0xp1"]
        assert context.ledger.publisher_record("0xp1").expected_count == 3
        assert not publisher.started

    def test_published_messages_recorded(self, context: RunContext):
        """Publish events land in the ledger in order."""
        scheduler = PublishScheduler(context)
        publisher = FakePublisher("0xP1")
        scheduler.add(publisher)
        scheduler.start_all()
        publisher.publish("a")
        publisher.publish("b")
        assert context.ledger.snapshot_sent("0xp1") == ("a", "b")

    def test_not_recorded_without_correctness(self, context: RunContext):
        """Run mode does not record payloads."""
        context.config.test_correctness = False
        scheduler = PublishScheduler(context)
        publisher = FakePublisher("0xP1")
        scheduler.add(publisher)
        publisher.publish("a")
        assert context.ledger.snapshot_sent("0xp1") == ()

    def test_all_ready(self, context: RunContext):
        """all_ready is true only once every publisher reached its bound."""
        scheduler = PublishScheduler(context)
        a, b = FakePublisher("0xa", 1), FakePublisher("0xb", 2)
        scheduler.add(a)
        scheduler.add(b)
        assert not scheduler.all_ready()
        scheduler.start_all()
        a.publish("x")
        assert not scheduler.all_ready()
        b.publish("y")
        b.publish("z")
        assert scheduler.all_ready()
        assert scheduler.published_counts() == {"0xa": 1, "0xb": 2}

    def test_first_failure_kept(self, context: RunContext):
        """The first publish error is kept and wrapped as PublishError."""
        scheduler = PublishScheduler(context)
        publisher = FakePublisher("0xa")
        scheduler.add(publisher)
        original = RuntimeError("socket closed")
        publisher.fail(original)
        publisher.fail(PublishError("second"))
        assert isinstance(scheduler.failure, PublishError)
        assert scheduler.failure.__cause__ is original

    def test_stop_all_continues_after_error(self, context: RunContext):
        """A publisher failing to stop does not keep others running."""
        scheduler = PublishScheduler(context)
        broken = FakePublisher("0xa")
        broken.stop = MagicMock(side_effect=RuntimeError("stuck"))
        other = FakePublisher("0xb")
        scheduler.add(broken)
        scheduler.add(other)
        scheduler.stop_all()
        assert other.stopped


class TestSubscriptionManager:
    """Tests for SubscriptionManager."""

    def test_immediate_subscriber(self, context: RunContext):
        """An immediate subscriber is registered, started and active."""
        manager = SubscriptionManager(context)
        subscriber = FakeSubscriber("0xS1")
        managed = manager.add(subscriber)
        assert managed.state == SubscriberState.ACTIVE
        assert subscriber.started_at is not None
        assert context.ledger.subscriber_record("0xs1").joined_at is not None

    def test_receive_hook_records(self, context: RunContext):
        """Received payloads land in the ledger under the publisher."""
        context.ledger.register_publisher("0xP1")
        manager = SubscriptionManager(context)
        subscriber = FakeSubscriber("0xS1")
        manager.add(subscriber)
        subscriber.receive("0xP1", "a")
        assert context.ledger.snapshot_received("0xp1", "0xs1") == ("a",)

    def test_delayed_subscriber(self, context: RunContext):
        """A delayed subscriber starts after setup delay plus its extra delay."""
        manager = SubscriptionManager(context)
        subscriber = FakeSubscriber("0xS1", ResendDirective.last_messages(10))
        added_at = time.monotonic()
        managed = manager.add(subscriber, extra_delay=0.05)
        assert managed.state == SubscriberState.DELAYED
        # Registered before start with its directive
        assert context.ledger.subscriber_record("0xs1").resend == ResendDirective.last_messages(10)
        deadline = time.monotonic() + 2.0
        while managed.state != SubscriberState.ACTIVE and time.monotonic() < deadline:
            time.sleep(0.005)
        assert managed.state == SubscriberState.ACTIVE
        expected = context.config.network_setup_delay + 0.05
        assert subscriber.started_at - added_at >= expected * 0.9

    def test_immediate_start_failure_raises(self, context: RunContext):
        """An immediate subscriber that cannot start fails fast."""
        manager = SubscriptionManager(context)
        with pytest.raises(AgentStartError):
            manager.add(FakeSubscriber("0xS1", fail=True))
        assert manager.states() == {"0xS1": SubscriberState.FAILED}

    def test_delayed_start_failure_is_logged(self, context: RunContext):
        """A delayed subscriber that cannot start is marked failed, not raised."""
        manager = SubscriptionManager(context)
        managed = manager.add(FakeSubscriber("0xS1", fail=True), extra_delay=0.0)
        deadline = time.monotonic() + 2.0
        while managed.state != SubscriberState.FAILED and time.monotonic() < deadline:
            time.sleep(0.005)
        assert managed.state == SubscriberState.FAILED

    def test_stop_all_cancels_pending(self, context: RunContext):
        """Stopping before a delayed start cancels it and records why."""
        manager = SubscriptionManager(context)
        subscriber = FakeSubscriber("0xS1")
        managed = manager.add(subscriber, extra_delay=10.0)
        assert not manager.settled()
        manager.stop_all()
        assert managed.state == SubscriberState.CANCELLED
        assert subscriber.started_at is None
        assert not subscriber.stopped
        record = context.ledger.subscriber_record("0xs1")
        assert record.not_started is not None
        assert record.start_failed is False

    def test_delayed_start_failure_is_recorded(self, context: RunContext):
        """The ledger keeps the reason a delayed subscriber failed to start."""
        manager = SubscriptionManager(context)
        managed = manager.add(FakeSubscriber("0xS1", fail=True), extra_delay=0.0)
        deadline = time.monotonic() + 2.0
        while managed.state != SubscriberState.FAILED and time.monotonic() < deadline:
            time.sleep(0.005)
        record = context.ledger.subscriber_record("0xs1")
        assert record.not_started == "cannot connect"
        assert record.start_failed is True
        assert manager.settled()

    def test_settled_once_delayed_start_ran(self, context: RunContext):
        manager = SubscriptionManager(context)
        manager.add(FakeSubscriber("0xS1"))
        managed = manager.add(FakeSubscriber("0xS2"), extra_delay=0.0)
        deadline = time.monotonic() + 2.0
        while not manager.settled() and time.monotonic() < deadline:
            time.sleep(0.005)
        assert managed.state == SubscriberState.ACTIVE

    def test_stop_all_waits_for_start_in_progress(self, context: RunContext):
        """A subscriber stopped while starting is stopped once its start returns."""
        manager = SubscriptionManager(context)
        subscriber = BlockingSubscriber("0xS1")
        managed = manager.add(subscriber, extra_delay=0.0)
        assert subscriber.entered.wait(2.0)
        assert managed.state == SubscriberState.STARTING

        stopper = threading.Thread(target=manager.stop_all)
        stopper.start()
        stopper.join(0.1)
        # stop_all is held back until the start finishes
        assert stopper.is_alive()
        assert not subscriber.stopped

        subscriber.release.set()
        stopper.join(2.0)
        assert not stopper.is_alive()
        assert subscriber.started_at is not None
        assert subscriber.stopped
        assert managed.state == SubscriberState.STOPPED
