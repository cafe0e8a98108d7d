"""In-memory stream network.

A self-contained implementation of the StreamClient capability for local
runs and tests. It models what the harness needs to exercise:

- streams owned by their creator, with read/write permissions granted by
  the owner
- optional signing, and signature verification on receive
- group-key encryption: a rotated key travels inside a message encrypted
  with the previous key; unknown keys are requested from the publisher
  (key exchange); revoke() re-keys and re-issues the key to the current
  authorized subscribers
- storage-backed resend (last K, from timestamp/sequence number)
- one delivery thread per subscription, with optional latency
- fault injection through drop predicates on live delivery

Nothing is actually encrypted: messages carry the id of the key they were
"encrypted" with, and a subscriber can read a message only if it holds
that key.
"""

from __future__ import annotations

import hashlib
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from ..core.client import (
    FailureHandler,
    MessageHandler,
    Operation,
    SecurityOptions,
    StreamClient,
    StreamMessage,
    Subscription,
    now_ms,
)
from ..core.keys import (
    GroupKey,
    KeyProvider,
    address_from_private_key,
    generate_private_key,
    normalize_identity,
)
from ..core.payload import serialize_payload
from ..core.protocol import ResendDirective, ResendKind
from ..exceptions import DecryptionError, PermissionDeniedError, StreamClientError

logger = logging.getLogger(__name__)

DropRule = Callable[[StreamMessage, str], bool]
"""(message, subscriber identity) -> True to drop the live delivery"""

_STOP = object()


def sign(message_publisher: str, sequence_number: int, serialized: str) -> str:
    data = f"{normalize_identity(message_publisher)}:{sequence_number}:{serialized}"
    return hashlib.sha256(data.encode()).hexdigest()


@dataclass
class _StreamState:
    id: str
    owner: str
    permissions: dict[str, set[str]] = field(default_factory=dict)
    history: list[StreamMessage] = field(default_factory=list)
    subscriptions: list[MemorySubscription] = field(default_factory=list)

    def allows(self, identity: str, operation: str) -> bool:
        key = normalize_identity(identity)
        return key == self.owner or operation in self.permissions.get(key, set())


class InMemoryNetwork:
    """The shared medium all in-memory clients connect to."""

    def __init__(self, latency: float = 0.0, key_provider: KeyProvider | None = None):
        """Initialize the network.

        Args:
            latency: Seconds each delivery is delayed on its subscription thread
            key_provider: Source of keys for revoke()
        """
        self.latency = latency
        self.key_provider = key_provider or KeyProvider()
        self.reachable = True
        self._lock = threading.RLock()
        self._streams: dict[str, _StreamState] = {}
        self._clients: dict[str, InMemoryClient] = {}
        self._drop_rules: list[DropRule] = []
        self.dropped = 0

    def client(
        self,
        security: SecurityOptions | None = None,
        private_key: str | None = None,
    ) -> InMemoryClient:
        return InMemoryClient(self, security, private_key)

    def client_factory(self, security: SecurityOptions) -> InMemoryClient:
        """ClientFactory bound to this network."""
        return self.client(security)

    # Fault injection

    def drop_where(self, rule: DropRule) -> None:
        with self._lock:
            self._drop_rules.append(rule)

    def drop_message(
        self,
        publisher_id: str,
        sequence_number: int,
        subscriber_id: str | None = None,
    ) -> None:
        """Drop the live delivery of one message (to one or all subscribers)."""
        pub = normalize_identity(publisher_id)
        sub = normalize_identity(subscriber_id) if subscriber_id else None

        def rule(message: StreamMessage, subscriber: str) -> bool:
            return (
                normalize_identity(message.publisher_id) == pub
                and message.sequence_number == sequence_number
                and (sub is None or normalize_identity(subscriber) == sub)
            )

        self.drop_where(rule)

    def history(self, stream_id: str) -> list[StreamMessage]:
        with self._lock:
            return list(self._stream(stream_id).history)

    # Client-facing internals

    def _connect(self, client: InMemoryClient) -> None:
        if not self.reachable:
            raise StreamClientError("Network unreachable")
        with self._lock:
            self._clients[normalize_identity(client.identity)] = client

    def _stream(self, stream_id: str) -> _StreamState:
        try:
            return self._streams[stream_id]
        except KeyError:
            raise StreamClientError(f"Stream not found: {stream_id}") from None

    def _create_stream(self, owner: str, name: str) -> str:
        stream_id = f"{normalize_identity(owner)}/{name}"
        with self._lock:
            if stream_id in self._streams:
                raise StreamClientError(f"Stream already exists: {stream_id}")
            self._streams[stream_id] = _StreamState(stream_id, normalize_identity(owner))
        return stream_id

    def _grant(self, granter: str, stream_id: str, identity: str, operation: str) -> None:
        with self._lock:
            stream = self._stream(stream_id)
            if normalize_identity(granter) != stream.owner:
                raise PermissionDeniedError(f"{granter} does not own {stream_id}")
            stream.permissions.setdefault(normalize_identity(identity), set()).add(operation)

    def _check(self, stream_id: str, identity: str, operation: str) -> None:
        with self._lock:
            if not self._stream(stream_id).allows(identity, operation):
                raise PermissionDeniedError(f"{identity} has no {operation} permission on {stream_id}")

    def _publish(self, message: StreamMessage) -> None:
        with self._lock:
            stream = self._stream(message.stream_id)
            stream.history.append(message)
            for sub in stream.subscriptions:
                if any(rule(message, sub.subscriber_id) for rule in self._drop_rules):
                    self.dropped += 1
                    continue
                sub.deliver(message)

    def _subscribe(self, sub: MemorySubscription, resend: ResendDirective | None) -> None:
        with self._lock:
            stream = self._stream(sub.stream_id)
            # History and registration under one lock: no gap, no duplicate
            for message in self._resend_slice(stream.history, resend):
                sub.deliver(message)
            stream.subscriptions.append(sub)

    @staticmethod
    def _resend_slice(history: list[StreamMessage], resend: ResendDirective | None) -> list[StreamMessage]:
        if resend is None or resend.kind == ResendKind.NONE:
            return []
        if resend.kind == ResendKind.LAST:
            return history[-(resend.last or 0):] if resend.last else []
        ref = (resend.from_timestamp or 0, resend.from_sequence_number)
        return [m for m in history if (m.timestamp, m.sequence_number) >= ref]

    def _unsubscribe(self, sub: MemorySubscription) -> None:
        with self._lock:
            stream = self._streams.get(sub.stream_id)
            if stream is not None and sub in stream.subscriptions:
                stream.subscriptions.remove(sub)

    def _request_key(self, stream_id: str, publisher_id: str, requester_id: str, key_id: str) -> GroupKey | None:
        """Key exchange: ask the publisher for a key on the requester's behalf."""
        with self._lock:
            if not self._stream(stream_id).allows(requester_id, Operation.READ):
                return None
            publisher = self._clients.get(normalize_identity(publisher_id))
        if publisher is None:
            return None
        return publisher._key(stream_id, key_id)

    def _reissue(self, stream_id: str, publisher_id: str, key: GroupKey) -> int:
        """Hand a new key to every current authorized subscriber of a stream."""
        with self._lock:
            stream = self._stream(stream_id)
            recipients = {
                sub.client
                for sub in stream.subscriptions
                if stream.allows(sub.subscriber_id, Operation.READ)
            }
        for client in recipients:
            client._add_key(stream_id, key)
        logger.debug("%s re-issued key %s to %d subscribers", publisher_id, key.id, len(recipients))
        return len(recipients)


class MemorySubscription(Subscription):
    """A subscription with its own delivery thread."""

    def __init__(
        self,
        client: InMemoryClient,
        stream_id: str,
        on_message: MessageHandler,
        on_failure: FailureHandler,
    ):
        self.client = client
        self._stream_id = stream_id
        self.on_message = on_message
        self.on_failure = on_failure
        self._queue: queue.Queue[Any] = queue.Queue()
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"delivery-{client.identity[:10]}",
            daemon=True,
        )
        self._thread.start()

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def subscriber_id(self) -> str:
        return self.client.identity

    def deliver(self, message: StreamMessage) -> None:
        if not self._closed.is_set():
            self._queue.put(message)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self.client.network._unsubscribe(self)
        self._queue.put(_STOP)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        latency = self.client.network.latency
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if latency:
                time.sleep(latency)
            try:
                self.client._receive(item, self)
            except Exception as e:
                logger.error("Delivery to %s failed: %s", self.subscriber_id, e)


class InMemoryClient(StreamClient):
    """StreamClient connected to an InMemoryNetwork."""

    def __init__(
        self,
        network: InMemoryNetwork,
        security: SecurityOptions | None = None,
        private_key: str | None = None,
    ):
        self.network = network
        self.security = security or SecurityOptions()
        self.private_key = private_key or generate_private_key()
        self._identity = address_from_private_key(self.private_key)
        self._lock = threading.Lock()
        self._keys: dict[str, dict[str, GroupKey]] = {}
        self._current_key: dict[str, GroupKey] = {}
        self._sequence: dict[str, int] = {}
        self._subscriptions: list[MemorySubscription] = []
        self._connected = False

    @property
    def identity(self) -> str:
        return self._identity

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        self.network._connect(self)
        self._connected = True

    def disconnect(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
        for sub in subscriptions:
            sub.close()
        self._connected = False

    def _require_connected(self) -> None:
        if not self._connected:
            raise StreamClientError(f"Client {self._identity} is not connected")

    def create_stream(self, name: str) -> str:
        self._require_connected()
        return self.network._create_stream(self._identity, name)

    def grant_permission(self, stream_id: str, identity: str, operation: str) -> None:
        self._require_connected()
        self.network._grant(self._identity, stream_id, identity, operation)

    def publish(
        self,
        stream_id: str,
        content: Any,
        timestamp: int | None = None,
        group_key: GroupKey | None = None,
    ) -> None:
        self._require_connected()
        self.network._check(stream_id, self._identity, Operation.WRITE)
        with self._lock:
            seq = self._sequence.get(stream_id, 0) + 1
            self._sequence[stream_id] = seq
            current = self._current_key.get(stream_id) or self.security.shared_group_key
            next_key = None
            if group_key is not None:
                self._keys.setdefault(stream_id, {})[group_key.id] = group_key
                if current is None:
                    current = group_key
                else:
                    next_key = group_key
                self._current_key[stream_id] = group_key
        serialized = serialize_payload(content)
        message = StreamMessage(
            stream_id=stream_id,
            publisher_id=self._identity,
            sequence_number=seq,
            timestamp=now_ms() if timestamp is None else timestamp,
            content=content,
            group_key_id=current.id if current is not None else None,
            next_group_key=next_key,
            signature=sign(self._identity, seq, serialized) if self.security.sign else None,
        )
        self.network._publish(message)

    def revoke(self, stream_id: str) -> None:
        self._require_connected()
        key = self.network.key_provider.generate_group_key()
        with self._lock:
            self._keys.setdefault(stream_id, {})[key.id] = key
            self._current_key[stream_id] = key
        self.network._reissue(stream_id, self._identity, key)

    def subscribe(
        self,
        stream_id: str,
        on_message: MessageHandler,
        on_failure: FailureHandler,
        resend: ResendDirective | None = None,
    ) -> MemorySubscription:
        self._require_connected()
        self.network._check(stream_id, self._identity, Operation.READ)
        sub = MemorySubscription(self, stream_id, on_message, on_failure)
        with self._lock:
            self._subscriptions.append(sub)
        self.network._subscribe(sub, resend)
        return sub

    # Key store

    def _key(self, stream_id: str, key_id: str) -> GroupKey | None:
        with self._lock:
            key = self._keys.get(stream_id, {}).get(key_id)
        shared = self.security.shared_group_key
        if key is None and shared is not None and shared.id == key_id:
            key = shared
        return key

    def _add_key(self, stream_id: str, key: GroupKey) -> None:
        with self._lock:
            self._keys.setdefault(stream_id, {})[key.id] = key

    def _receive(self, message: StreamMessage, sub: MemorySubscription) -> None:
        if self.security.verify_signatures:
            expected = sign(message.publisher_id, message.sequence_number, message.serialized_content)
            if message.signature != expected:
                sub.on_failure(
                    DecryptionError(
                        f"Invalid signature on message {message.sequence_number} from {message.publisher_id}"
                    )
                )
                return
        if message.group_key_id is not None:
            key = self._key(message.stream_id, message.group_key_id)
            if key is None and self.security.key_exchange:
                key = self.network._request_key(
                    message.stream_id, message.publisher_id, self._identity, message.group_key_id
                )
                if key is not None:
                    self._add_key(message.stream_id, key)
            if key is None:
                sub.on_failure(
                    DecryptionError(
                        f"No key {message.group_key_id} for message {message.sequence_number} "
                        f"from {message.publisher_id}"
                    )
                )
                return
            if message.next_group_key is not None:
                self._add_key(message.stream_id, message.next_group_key)
        sub.on_message(message)
