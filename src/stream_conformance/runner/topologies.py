"""Named topologies - which agents a run builds and how they are secured.

A topology is a callable that takes a TopologyBuilder and adds publishers
and subscribers through it. Six are built in, from cleartext unsigned
streams up to exchanged keys with rotation and revocation.
"""

from __future__ import annotations

from typing import Callable

from ..agents.base import PublisherAgent, SubscriberAgent
from ..agents.external import ExternalPublisher, ExternalSubscriber
from ..agents.native import NativePublisher, NativeSubscriber
from ..core.client import ClientFactory, Operation, SecurityOptions, StreamClient
from ..core.context import RunContext
from ..core.keys import GroupKey, generate_private_key
from ..core.protocol import ResendDirective
from ..exceptions import ConfigError, SetupError
from ..scheduling.scheduler import PublishScheduler, draw_interval
from ..scheduling.strategies import PublishStrategy, create_strategy
from .subscriptions import SubscriptionManager

CLEARTEXT = SecurityOptions()
SIGNED = SecurityOptions(sign=True, verify_signatures=True)

SubscriberMaker = Callable[[ResendDirective | None], SubscriberAgent]
"""Creates a subscriber with the given resend directive"""


class TopologyBuilder:
    """Creates agents, grants their permissions and hands them to the run.

    Publishers go to the scheduler, subscribers to the subscription manager.
    Every agent is granted its stream permissions before it is added.
    """

    def __init__(
        self,
        context: RunContext,
        client_factory: ClientFactory,
        creator: StreamClient,
        stream_id: str,
        scheduler: PublishScheduler,
        subscriptions: SubscriptionManager,
    ):
        self.context = context
        self.config = context.config
        self.client_factory = client_factory
        self.creator = creator
        self.stream_id = stream_id
        self.scheduler = scheduler
        self.subscriptions = subscriptions
        # Reference time for "resend from" subscribers
        self.built_at = context.clock()

    # Permissions

    def grant(self, identity: str, *operations: str) -> None:
        """Grant stream permissions on behalf of the stream creator.

        Raises:
            SetupError: If the grant fails
        """
        for operation in operations:
            try:
                self.creator.grant_permission(self.stream_id, identity, operation)
            except Exception as e:
                raise SetupError(f"Failed to grant {operation} on {self.stream_id} to {identity}: {e}") from e

    # Strategies

    def strategy(self, name: str, **options: object) -> PublishStrategy:
        """Create a publish strategy that draws from the run's randomness."""
        if name != "default":
            options.setdefault("key_provider", self.context.key_provider)
        return create_strategy(name, rng=self.context.rng, clock=self.context.clock, **options)

    def _interval(self) -> float:
        return draw_interval(self.context.rng, self.config.min_interval, self.config.max_interval)

    # Publishers

    def native_publisher(self, strategy: PublishStrategy, security: SecurityOptions) -> NativePublisher:
        client = self.client_factory(security)
        self.grant(client.identity, Operation.READ, Operation.WRITE)
        publisher = NativePublisher(
            client,
            self.stream_id,
            strategy,
            interval=self._interval(),
            max_messages=self.config.max_messages,
            label=self.config.native_label,
            stop_timeout=self.config.stop_timeout,
        )
        self.scheduler.add(publisher)
        return publisher

    def external_publisher(self, strategy: PublishStrategy, group_key: GroupKey | None = None) -> ExternalPublisher:
        command = self._external_command()
        private_key = generate_private_key()
        identity = self.context.identity_of(private_key)
        self.grant(identity, Operation.READ, Operation.WRITE)
        publisher = ExternalPublisher(
            command,
            identity,
            private_key,
            self.stream_id,
            strategy,
            interval=self._interval(),
            max_messages=self.config.max_messages,
            label=self.config.external_label,
            group_key_hex=group_key.hex if group_key is not None else None,
            startup_grace=self.config.startup_grace,
            stop_timeout=self.config.stop_timeout,
        )
        self.scheduler.add(publisher)
        return publisher

    def add_publishers(
        self,
        strategy_factory: Callable[[], PublishStrategy],
        security_factory: Callable[[], SecurityOptions],
    ) -> list[PublisherAgent]:
        """Add the configured native and external publishers.

        Args:
            strategy_factory: Builds a fresh strategy per publisher
            security_factory: Builds the security setup per publisher; an
                external publisher is handed its shared_group_key
        """
        participants = self.config.participants
        added: list[PublisherAgent] = []
        for _ in range(participants.native_publishers):
            added.append(self.native_publisher(strategy_factory(), security_factory()))
        for _ in range(participants.external_publishers):
            added.append(self.external_publisher(strategy_factory(), security_factory().shared_group_key))
        return added

    # Subscribers

    def native_subscriber(self, security: SecurityOptions, resend: ResendDirective | None = None) -> NativeSubscriber:
        client = self.client_factory(security)
        self.grant(client.identity, Operation.READ)
        return NativeSubscriber(client, self.stream_id, resend, label=self.config.native_label)

    def external_subscriber(
        self,
        resend: ResendDirective | None = None,
        group_key: GroupKey | None = None,
    ) -> ExternalSubscriber:
        command = self._external_command()
        private_key = generate_private_key()
        identity = self.context.identity_of(private_key)
        self.grant(identity, Operation.READ)
        return ExternalSubscriber(
            command,
            identity,
            private_key,
            self.stream_id,
            resend,
            label=self.config.external_label,
            group_key_hex=group_key.hex if group_key is not None else None,
            startup_grace=self.config.startup_grace,
            stop_timeout=self.config.stop_timeout,
        )

    def subscriber_groups(
        self,
        security: SecurityOptions,
        group_key: GroupKey | None = None,
    ) -> tuple[list[SubscriberMaker], list[SubscriberMaker]]:
        """Deferred constructors for the native and the external subscribers.

        Construction is deferred so each subscriber is created with the
        resend directive the layout assigns to it.
        """
        participants = self.config.participants
        native = [
            lambda resend: self.native_subscriber(security, resend)
            for _ in range(participants.native_subscribers)
        ]
        external = [
            lambda resend: self.external_subscriber(resend, group_key)
            for _ in range(participants.external_subscribers)
        ]
        return native, external

    def add_live(self, group: list[SubscriberMaker]) -> None:
        for make in group:
            self.subscriptions.add(make(None))

    def add_with_resend(self, group: list[SubscriberMaker]) -> None:
        """Add a group with the resend layout.

        With more than two subscribers, all but the last two join live, the
        second to last joins later resending from the build time, and the
        last joins even later resending the last messages. Smaller groups
        all join live.
        """
        if len(group) <= 2:
            self.add_live(group)
            return
        self.add_live(group[:-2])
        self.subscriptions.add(
            group[-2](ResendDirective.from_time(self.built_at)),
            extra_delay=self.config.resend_from_delay,
        )
        self.subscriptions.add(
            group[-1](ResendDirective.last_messages(self.config.resend_last_count)),
            extra_delay=self.config.resend_last_delay,
        )

    def _external_command(self) -> str:
        if not self.config.external_command:
            raise ConfigError("External participants need an external agent command")
        return self.config.external_command


Topology = Callable[[TopologyBuilder], None]


def cleartext_unsigned(builder: TopologyBuilder) -> None:
    builder.add_publishers(lambda: builder.strategy("default"), lambda: CLEARTEXT)
    native, external = builder.subscriber_groups(CLEARTEXT)
    builder.add_with_resend(native + external)


def cleartext_signed(builder: TopologyBuilder) -> None:
    builder.add_publishers(lambda: builder.strategy("default"), lambda: SIGNED)
    native, external = builder.subscriber_groups(SIGNED)
    builder.add_with_resend(native)
    builder.add_with_resend(external)


def _shared(builder: TopologyBuilder, strategy_factory: Callable[[], PublishStrategy]) -> None:
    key = builder.context.key_provider.generate_group_key()
    security = SecurityOptions(sign=True, verify_signatures=True, shared_group_key=key)
    builder.add_publishers(strategy_factory, lambda: security)
    native, external = builder.subscriber_groups(security, group_key=key)
    builder.add_live(native + external)


def encrypted_shared_signed(builder: TopologyBuilder) -> None:
    _shared(builder, lambda: builder.strategy("default"))


def encrypted_shared_rotating_signed(builder: TopologyBuilder) -> None:
    period = builder.config.shared_rotation_period
    _shared(builder, lambda: builder.strategy("rotating", rotation_period=period))


def _exchanged(builder: TopologyBuilder, strategy_factory: Callable[[], PublishStrategy]) -> None:
    provider = builder.context.key_provider

    # Each publisher has its own key; nobody else knows it up front
    def own_key() -> SecurityOptions:
        return SecurityOptions(
            sign=True,
            verify_signatures=True,
            shared_group_key=provider.generate_group_key(),
        )

    builder.add_publishers(strategy_factory, own_key)
    native, external = builder.subscriber_groups(
        SecurityOptions(sign=True, verify_signatures=True, key_exchange=True)
    )
    builder.add_with_resend(native)
    builder.add_with_resend(external)


def encrypted_exchanged_rotating_signed(builder: TopologyBuilder) -> None:
    period = builder.config.exchanged_rotation_period
    _exchanged(builder, lambda: builder.strategy("rotating", rotation_period=period))


def encrypted_exchanged_rotating_revoking_signed(builder: TopologyBuilder) -> None:
    period = builder.config.exchanged_rotation_period
    revocation = builder.config.revocation_period
    _exchanged(
        builder,
        lambda: builder.strategy("rotating-revoking", rotation_period=period, revocation_period=revocation),
    )


TOPOLOGIES: dict[str, Topology] = {
    "stream-cleartext-unsigned": cleartext_unsigned,
    "stream-cleartext-signed": cleartext_signed,
    "stream-encrypted-shared-signed": encrypted_shared_signed,
    "stream-encrypted-shared-rotating-signed": encrypted_shared_rotating_signed,
    "stream-encrypted-exchanged-rotating-signed": encrypted_exchanged_rotating_signed,
    "stream-encrypted-exchanged-rotating-revoking-signed": encrypted_exchanged_rotating_revoking_signed,
}

TOPOLOGY_NAMES = tuple(TOPOLOGIES)


def get_topology(name: str) -> Topology:
    """Look up a built-in topology.

    Raises:
        ConfigError: If the name is unknown
    """
    try:
        return TOPOLOGIES[name]
    except KeyError:
        raise ConfigError(f"Unknown topology '{name}' (known: {', '.join(TOPOLOGY_NAMES)})") from None
