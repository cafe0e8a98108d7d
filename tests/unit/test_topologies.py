"""Tests for the topology builder and the named topologies."""

from __future__ import annotations

from dataclasses import replace
from typing import Generator

import pytest

from stream_conformance.clients.memory import InMemoryNetwork
from stream_conformance.config import Participants
from stream_conformance.core.client import Operation
from stream_conformance.core.context import RunContext
from stream_conformance.core.protocol import ResendDirective, ResendKind
from stream_conformance.exceptions import ConfigError
from stream_conformance.runner.subscriptions import SubscriberState, SubscriptionManager
from stream_conformance.runner.topologies import (
    CLEARTEXT,
    TOPOLOGY_NAMES,
    TopologyBuilder,
    encrypted_exchanged_rotating_signed,
    encrypted_shared_signed,
    get_topology,
)
from stream_conformance.scheduling.scheduler import PublishScheduler


def make_builder(context: RunContext, network: InMemoryNetwork) -> TopologyBuilder:
    creator = network.client()
    creator.connect()
    stream_id = creator.create_stream("topology-test")
    return TopologyBuilder(
        context,
        network.client_factory,
        creator,
        stream_id,
        PublishScheduler(context),
        SubscriptionManager(context),
    )


@pytest.fixture
def three_subscribers(fast_config) -> RunContext:
    config = replace(fast_config, participants=Participants(native_publishers=2, native_subscribers=3))
    return RunContext.create(config, "topology")


@pytest.fixture
def builder(three_subscribers, network) -> Generator[TopologyBuilder, None, None]:
    builder = make_builder(three_subscribers, network)
    try:
        yield builder
    finally:
        builder.subscriptions.stop_all()


class TestRegistry:
    """Tests for the named topology registry."""

    def test_six_topologies(self):
        assert TOPOLOGY_NAMES == (
            "stream-cleartext-unsigned",
            "stream-cleartext-signed",
            "stream-encrypted-shared-signed",
            "stream-encrypted-shared-rotating-signed",
            "stream-encrypted-exchanged-rotating-signed",
            "stream-encrypted-exchanged-rotating-revoking-signed",
        )

    def test_unknown_name(self):
        with pytest.raises(ConfigError, match="stream-foo"):
            get_topology("stream-foo")


class TestBuilder:
    """Tests for TopologyBuilder."""

    def test_publisher_gets_read_and_write(self, builder, network):
        publisher = builder.native_publisher(builder.strategy("default"), CLEARTEXT)
        stream = network._stream(builder.stream_id)
        assert stream.allows(publisher.identity, Operation.READ)
        assert stream.allows(publisher.identity, Operation.WRITE)
        assert builder.scheduler.publishers == [publisher]

    def test_subscriber_gets_read_only(self, builder, network):
        subscriber = builder.native_subscriber(CLEARTEXT)
        stream = network._stream(builder.stream_id)
        assert stream.allows(subscriber.identity, Operation.READ)
        assert not stream.allows(subscriber.identity, Operation.WRITE)

    def test_resend_layout(self, builder, three_subscribers):
        """Live first, then resend-from the build time, then resend-last."""
        native, external = builder.subscriber_groups(CLEARTEXT)
        assert len(native) == 3
        assert external == []

        builder.add_with_resend(native)

        managed = builder.subscriptions.subscribers
        directives = [m.agent.resend for m in managed]
        assert directives[0].is_live
        assert directives[1] == ResendDirective.from_time(builder.built_at)
        assert directives[2].kind == ResendKind.LAST
        assert directives[2].last == three_subscribers.config.resend_last_count
        assert managed[0].state == SubscriberState.ACTIVE
        assert managed[1].state == SubscriberState.DELAYED
        assert managed[2].delay > managed[1].delay

    def test_small_group_joins_live(self, builder):
        native, _ = builder.subscriber_groups(CLEARTEXT)
        builder.add_with_resend(native[:2])
        assert all(m.agent.resend.is_live for m in builder.subscriptions.subscribers)

    def test_external_without_command(self, builder):
        with pytest.raises(ConfigError, match="external agent command"):
            builder.external_subscriber()


class TestTopologies:
    """Tests for the security setup of the named topologies."""

    def test_shared_key_known_to_everyone(self, builder):
        encrypted_shared_signed(builder)

        keys = {p.client.security.shared_group_key for p in builder.scheduler.publishers}
        keys |= {m.agent.client.security.shared_group_key for m in builder.subscriptions.subscribers}
        assert len(keys) == 1
        assert None not in keys

    def test_exchanged_keys_are_per_publisher(self, builder):
        encrypted_exchanged_rotating_signed(builder)

        keys = [p.client.security.shared_group_key for p in builder.scheduler.publishers]
        assert len(set(keys)) == 2
        for managed in builder.subscriptions.subscribers:
            security = managed.agent.client.security
            assert security.key_exchange
            assert security.shared_group_key is None
