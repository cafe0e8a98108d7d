"""Run controller - drives one conformance run from setup to verdict.

Phases:

1. Setup: connect the creator client and create the stream
2. Build: the topology adds publishers and subscribers
3. Warm-up: wait network_setup_delay for subscriptions to settle
4. Publish: start every publisher, poll until all are ready (bounded mode)
   or until a stop is requested (infinite mode)
5. Cool-down: stop publishers, wait propagation_delay for in-flight
   messages
6. Stop: stop subscribers, disconnect, close the ledger
7. Verify: reconcile the ledger (test mode only)

Cleanup runs whatever happened before it. A publish failure is raised
after cleanup.
"""

from __future__ import annotations

import logging
import threading
import time

from ..core.client import ClientFactory, SecurityOptions, StreamClient
from ..core.context import RunContext
from ..evaluation.metrics import RunMetrics
from ..evaluation.reconciler import Reconciler
from ..evaluation.verdict import RunVerdict
from ..exceptions import SetupError
from ..scheduling.scheduler import PublishScheduler
from .subscriptions import SubscriptionManager
from .topologies import Topology, TopologyBuilder, get_topology


class RunController:
    """Orchestrates a run over one topology."""

    def __init__(
        self,
        context: RunContext,
        client_factory: ClientFactory,
        topology: str | Topology,
        name: str | None = None,
    ):
        """Initialize the controller.

        Args:
            context: Run context (config, ledger, logger)
            client_factory: Builds the clients of native agents and the creator
            topology: Built-in topology name, or a topology callable
            name: Run name; defaults to the topology name

        Raises:
            ConfigError: If the topology name is unknown
        """
        self.context = context
        self.client_factory = client_factory
        if isinstance(topology, str):
            self.topology = get_topology(topology)
            self.name = name or topology
        else:
            self.topology = topology
            self.name = name or getattr(topology, "__name__", "custom")
        self.scheduler = PublishScheduler(context)
        self.subscriptions = SubscriptionManager(context)
        self.stream_id: str | None = None
        self.verdict: RunVerdict | None = None
        self._stop_requested = threading.Event()
        self._creator: StreamClient | None = None
        self._publish_started: float | None = None

    @property
    def logger(self) -> logging.Logger:
        return self.context.logger

    def request_stop(self) -> None:
        """Ask a running run to finish; it still cools down and verifies."""
        self._stop_requested.set()

    def run(self) -> RunVerdict:
        """Run all phases.

        Returns:
            RunVerdict; passed is meaningful only in test mode

        Raises:
            SetupError: If the stream or an agent could not be set up
            PublishError: If a publisher failed during the run
        """
        config = self.context.config
        try:
            self._setup()
            self._build()
            self.logger.info("Warming up for %.1fs", config.network_setup_delay)
            self._stop_requested.wait(config.network_setup_delay)
            self._publish()
        except BaseException:
            self._shutdown(cool_down=False)
            raise

        failure = self.scheduler.failure
        self._shutdown(cool_down=failure is None)
        if failure is not None:
            raise failure

        self.verdict = self._verify()
        self.logger.info(self.verdict.summary())
        return self.verdict

    @property
    def passed(self) -> bool:
        return self.verdict is not None and self.verdict.passed

    def _setup(self) -> None:
        self._creator = self.client_factory(SecurityOptions())
        try:
            self._creator.connect()
            self.stream_id = self._creator.create_stream(f"{self.name}-{self.context.clock()}")
        except Exception as e:
            raise SetupError(f"Failed to create the test stream: {e}") from e
        self.logger.info("Created stream %s", self.stream_id)

    def _build(self) -> None:
        participants = self.context.config.participants
        self.logger.info(
            "Creating %s: %d native publishers, %d native subscribers, "
            "%d external publishers, %d external subscribers",
            self.name,
            participants.native_publishers,
            participants.native_subscribers,
            participants.external_publishers,
            participants.external_subscribers,
        )
        builder = TopologyBuilder(
            self.context,
            self.client_factory,
            self._creator,
            self.stream_id,
            self.scheduler,
            self.subscriptions,
        )
        self.topology(builder)
        self.logger.info("Created publishers and subscribers for %s", self.name)

    def _publish(self) -> None:
        config = self.context.config
        self.logger.info("Starting %s...", self.name)
        self._publish_started = time.monotonic()
        self.scheduler.start_all()
        waiting = False
        try:
            while not self._stop_requested.is_set():
                if self.scheduler.failure is not None:
                    return
                if not config.infinite and self.scheduler.all_ready():
                    # Delayed resend subscribers still join a finished stream
                    if self.subscriptions.settled():
                        return
                    if not waiting:
                        self.logger.info("Publishers done, waiting for delayed subscribers to start")
                        waiting = True
                self._stop_requested.wait(config.poll_interval)
        except KeyboardInterrupt:
            self.logger.info("Interrupted, stopping %s", self.name)

    def _shutdown(self, cool_down: bool) -> None:
        self.scheduler.stop_all()
        if cool_down:
            delay = self.context.config.propagation_delay
            self.logger.info("Publishers stopped, waiting %.1fs for in-flight messages", delay)
            time.sleep(delay)
        self.subscriptions.stop_all()
        if self._creator is not None:
            try:
                self._creator.disconnect()
            except Exception as e:
                self.logger.error("Error disconnecting stream creator: %s", e)
        self.context.ledger.close()
        self.logger.info("Stopped %s", self.name)

    def _verify(self) -> RunVerdict:
        config = self.context.config
        ledger = self.context.ledger
        metrics = RunMetrics(
            duration_seconds=(
                time.monotonic() - self._publish_started if self._publish_started is not None else 0.0
            ),
            publishers=len(self.scheduler.publishers),
            subscribers=len(self.subscriptions.subscribers),
            published=sum(self.scheduler.published_counts().values()),
            received=ledger.total_received(),
            late_events=ledger.late_events,
            extra={"stream_id": self.stream_id},
        )
        if not config.test_correctness:
            return RunVerdict(
                topology=self.name,
                total_published=metrics.published,
                total_received=metrics.received,
                correctness_checked=False,
                metrics=metrics,
            )
        reconciler = Reconciler(
            ledger,
            over_receipt_tolerance=config.over_receipt_tolerance,
            strict_over_receipt=config.strict_over_receipt,
        )
        return reconciler.reconcile(topology=self.name, metrics=metrics)
