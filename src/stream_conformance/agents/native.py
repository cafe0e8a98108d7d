"""In-process agents driving a StreamClient."""

from __future__ import annotations

import logging

from ..core.client import StreamClient, StreamMessage, Subscription
from ..core.protocol import ResendDirective
from ..exceptions import AgentStartError, DecryptionError, PublishError
from ..scheduling.strategies import PublishStrategy
from ..scheduling.ticker import PeriodicTask
from .base import AgentKind, PublisherAgent, SubscriberAgent

logger = logging.getLogger(__name__)


class NativePublisher(PublisherAgent):
    """Publishes through an in-process client on a periodic task."""

    kind = AgentKind.NATIVE

    def __init__(
        self,
        client: StreamClient,
        stream_id: str,
        strategy: PublishStrategy,
        interval: float,
        max_messages: int = 0,
        label: str = "python",
        stop_timeout: float = 5.0,
    ):
        """Initialize the publisher.

        Args:
            client: Client to publish with (connected on start)
            stream_id: Target stream
            strategy: Publish strategy called on every tick
            interval: Seconds between publishes
            max_messages: Stop after this many messages (0 = never)
            label: Implementation label
            stop_timeout: Seconds to wait for the tick thread on stop
        """
        super().__init__(client.identity, label, interval, max_messages)
        self.client = client
        self.stream_id = stream_id
        self.strategy = strategy
        self.stop_timeout = stop_timeout
        self._task: PeriodicTask | None = None
        self._connected = False

    def start(self) -> None:
        try:
            self.client.connect()
        except Exception as e:
            raise AgentStartError(f"{self.describe()} failed to connect: {e}") from e
        self._connected = True
        self._task = PeriodicTask(
            name=f"publisher-{self.identity[:10]}",
            interval=self.interval,
            tick=self._tick,
            on_error=self._on_tick_error,
        )
        self._task.start()
        logger.debug("Started %s (interval %.3fs)", self.describe(), self.interval)

    def _tick(self, counter: int) -> bool:
        message = self.strategy.publish(self.client, self.stream_id, counter)
        # Recorded on this thread before the tick returns
        self._emit_published(message.payload, message.timestamp)
        return self.max_messages == 0 or counter < self.max_messages

    def _on_tick_error(self, error: BaseException) -> None:
        failure = PublishError(
            f"{self.describe()} failed to publish message {self.published_count + 1}: {error}"
        )
        failure.__cause__ = error
        self._emit_error(failure)

    @property
    def is_ready(self) -> bool:
        if self.max_messages > 0 and self.published_count >= self.max_messages:
            return True
        return self._task is not None and self._task.finished

    @property
    def error(self) -> BaseException | None:
        return self._task.error if self._task is not None else None

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            if not self._task.join(self.stop_timeout):
                logger.warning("%s did not stop within %.1fs", self.describe(), self.stop_timeout)
        if self._connected:
            self.client.disconnect()
            self._connected = False


class NativeSubscriber(SubscriberAgent):
    """Subscribes through an in-process client."""

    kind = AgentKind.NATIVE

    def __init__(
        self,
        client: StreamClient,
        stream_id: str,
        resend: ResendDirective | None = None,
        label: str = "python",
    ):
        super().__init__(client.identity, label, resend)
        self.client = client
        self.stream_id = stream_id
        self._subscription: Subscription | None = None

    def start(self) -> None:
        try:
            self.client.connect()
        except Exception as e:
            raise AgentStartError(f"{self.describe()} failed to connect: {e}") from e
        try:
            self._subscription = self.client.subscribe(
                self.stream_id,
                self._handle_message,
                self._handle_failure,
                resend=None if self.resend.is_live else self.resend,
            )
        except Exception as e:
            self._disconnect_quietly()
            raise AgentStartError(f"{self.describe()} failed to subscribe: {e}") from e
        logger.debug("Started %s (resend %s)", self.describe(), self.resend.to_json())

    def _disconnect_quietly(self) -> None:
        try:
            self.client.disconnect()
        except Exception as e:
            logger.warning("%s failed to disconnect after a failed start: %s", self.describe(), e)

    def _handle_message(self, message: StreamMessage) -> None:
        self._emit_received(message.publisher_id, message.serialized_content, message.timestamp)

    def _handle_failure(self, error: DecryptionError) -> None:
        logger.error("%s could not decrypt a message: %s", self.describe(), error)
        self._emit_failure(str(error))

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self.client.disconnect()
