"""Message ledger - who sent what, and who received what from whom.

The ledger is the only state shared between agent threads. It keeps:

- sent: publisher -> ordered payloads, in publish order
- received: publisher -> (subscriber -> ordered payloads), in arrival order

Each inner sequence has its own lock, so publishers and subscribers never
contend with agents they are not paired with. The registry lock is only
taken when a key is created. Lookups on the hot path read the dicts
without it; a missing key falls back to the locked creation path.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from ..exceptions import LedgerError
from .client import now_ms
from .keys import normalize_identity
from .protocol import ResendDirective

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    """One recorded payload."""

    payload: str
    timestamp: int


@dataclass
class PublisherRecord:
    """Registration data for a publisher."""

    identity: str
    label: str = ""
    expected_count: int | None = None
    """Message bound the publisher was started with (None = unbounded)"""


@dataclass
class SubscriberRecord:
    """Registration data for a subscriber."""

    identity: str
    label: str = ""
    resend: ResendDirective = field(default_factory=ResendDirective)
    joined_at: int | None = None
    """Epoch ms at which the subscriber was started"""

    not_started: str | None = None
    """Why the subscriber never started (None if it did)"""

    start_failed: bool = False
    """True if start() raised, False if the start was cancelled"""


@dataclass(frozen=True)
class FailureRecord:
    """A decryption or validation failure reported by a subscriber."""

    subscriber: str
    reason: str
    timestamp: int


class _Sequence:
    """Append-only list owned by one ledger key."""

    __slots__ = ("_lock", "_entries")

    def __init__(self, entries: list[LedgerEntry] | None = None):
        self._lock = threading.Lock()
        self._entries: list[LedgerEntry] = entries or []

    def append(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def snapshot(self) -> tuple[LedgerEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class MessageLedger:
    """Concurrent store of sent and received message sequences."""

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._failure_lock = threading.Lock()
        self._sent: dict[str, _Sequence] = {}
        self._received: dict[str, dict[str, _Sequence]] = {}
        self._publishers: dict[str, PublisherRecord] = {}
        self._subscribers: dict[str, SubscriberRecord] = {}
        self._failures: list[FailureRecord] = []
        self._closed = threading.Event()
        self._late_events = 0

    # Registration

    def register_publisher(
        self,
        identity: str,
        label: str = "",
        expected_count: int | None = None,
    ) -> None:
        """Create the sent slot for a publisher, plus a received slot for
        every subscriber registered so far."""
        key = normalize_identity(identity)
        with self._registry_lock:
            self._publishers[key] = PublisherRecord(key, label, expected_count)
            self._sent.setdefault(key, _Sequence())
            inner = self._received.setdefault(key, {})
            for sub in self._subscribers:
                inner.setdefault(sub, _Sequence())

    def register_subscriber(
        self,
        identity: str,
        label: str = "",
        resend: ResendDirective | None = None,
    ) -> None:
        """Create a received slot under every registered publisher.

        A subscriber that legitimately gets nothing from some publisher
        still shows up with an empty sequence.
        """
        key = normalize_identity(identity)
        with self._registry_lock:
            self._subscribers[key] = SubscriberRecord(key, label, resend or ResendDirective())
            for pub in self._publishers:
                self._received.setdefault(pub, {}).setdefault(key, _Sequence())

    def mark_joined(self, subscriber_id: str, timestamp: int | None = None) -> None:
        key = normalize_identity(subscriber_id)
        with self._registry_lock:
            record = self._subscribers.get(key)
            if record is None:
                record = self._subscribers[key] = SubscriberRecord(key)
            record.joined_at = now_ms() if timestamp is None else timestamp

    def mark_not_started(self, subscriber_id: str, reason: str, failed: bool = False) -> None:
        """Record that a registered subscriber never got to subscribe.

        Args:
            subscriber_id: Subscriber identity
            reason: What prevented the start
            failed: True if its start raised, False if it was cancelled
        """
        key = normalize_identity(subscriber_id)
        with self._registry_lock:
            record = self._subscribers.get(key)
            if record is None:
                record = self._subscribers[key] = SubscriberRecord(key)
            record.not_started = reason
            record.start_failed = failed

    # Recording

    def record_sent(self, publisher_id: str, payload: str, timestamp: int | None = None) -> None:
        if self._closed.is_set():
            self._count_late("sent", publisher_id)
            return
        key = normalize_identity(publisher_id)
        seq = self._sent.get(key)
        if seq is None:
            seq = self._ensure_sent(key)
        seq.append(LedgerEntry(payload, now_ms() if timestamp is None else timestamp))

    def record_received(
        self,
        publisher_id: str,
        subscriber_id: str,
        payload: str,
        timestamp: int | None = None,
    ) -> None:
        if self._closed.is_set():
            self._count_late("received", subscriber_id)
            return
        pub = normalize_identity(publisher_id)
        sub = normalize_identity(subscriber_id)
        inner = self._received.get(pub)
        seq = inner.get(sub) if inner is not None else None
        if seq is None:
            seq = self._ensure_received(pub, sub)
        seq.append(LedgerEntry(payload, now_ms() if timestamp is None else timestamp))

    def record_failure(self, subscriber_id: str, reason: str) -> None:
        """Count a decryption or validation failure. Recorded even after
        close so that no failure is lost to the stop boundary."""
        record = FailureRecord(normalize_identity(subscriber_id), reason, now_ms())
        with self._failure_lock:
            self._failures.append(record)

    def _ensure_sent(self, key: str) -> _Sequence:
        with self._registry_lock:
            if key not in self._publishers:
                logger.warning("Recording sent message for unregistered publisher %s", key)
            return self._sent.setdefault(key, _Sequence())

    def _ensure_received(self, pub: str, sub: str) -> _Sequence:
        with self._registry_lock:
            if pub not in self._publishers:
                logger.warning("Subscriber %s received from unregistered publisher %s", sub, pub)
            return self._received.setdefault(pub, {}).setdefault(sub, _Sequence())

    def _count_late(self, what: str, identity: str) -> None:
        with self._failure_lock:
            self._late_events += 1
        logger.debug("Ignoring %s event from %s after ledger close", what, identity)

    # Lifecycle

    def close(self) -> None:
        """Stop accepting events; snapshots are stable from here on."""
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def late_events(self) -> int:
        with self._failure_lock:
            return self._late_events

    # Snapshots

    def snapshot_sent(self, publisher_id: str) -> tuple[str, ...]:
        return tuple(e.payload for e in self.snapshot_sent_entries(publisher_id))

    def snapshot_sent_entries(self, publisher_id: str) -> tuple[LedgerEntry, ...]:
        seq = self._sent.get(normalize_identity(publisher_id))
        return seq.snapshot() if seq is not None else ()

    def snapshot_received(self, publisher_id: str, subscriber_id: str) -> tuple[str, ...]:
        inner = self._received.get(normalize_identity(publisher_id), {})
        seq = inner.get(normalize_identity(subscriber_id))
        return tuple(e.payload for e in seq.snapshot()) if seq is not None else ()

    def publishers(self) -> list[str]:
        """Publishers that were registered or have sent something."""
        with self._registry_lock:
            return list(dict.fromkeys([*self._publishers, *self._sent]))

    def registered_publishers(self) -> list[str]:
        with self._registry_lock:
            return list(self._publishers)

    def received_publishers(self) -> list[str]:
        """Publishers seen by any subscriber, registered or not."""
        with self._registry_lock:
            return list(self._received)

    def subscribers_of(self, publisher_id: str) -> list[str]:
        with self._registry_lock:
            return list(self._received.get(normalize_identity(publisher_id), {}))

    def subscribers(self) -> list[str]:
        with self._registry_lock:
            return list(self._subscribers)

    def publisher_record(self, publisher_id: str) -> PublisherRecord | None:
        return self._publishers.get(normalize_identity(publisher_id))

    def subscriber_record(self, subscriber_id: str) -> SubscriberRecord | None:
        return self._subscribers.get(normalize_identity(subscriber_id))

    def failures(self) -> list[FailureRecord]:
        with self._failure_lock:
            return list(self._failures)

    def total_sent(self) -> int:
        return sum(len(seq) for seq in list(self._sent.values()))

    def total_received(self) -> int:
        return sum(len(seq) for _, _, seq in self._iter_received())

    def _iter_received(self) -> Iterator[tuple[str, str, _Sequence]]:
        with self._registry_lock:
            items = [
                (pub, sub, seq)
                for pub, inner in self._received.items()
                for sub, seq in inner.items()
            ]
        return iter(items)

    # Persistence

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        with self._registry_lock:
            publishers = list(self._publishers.values())
            subscribers = list(self._subscribers.values())
        return {
            "publishers": [
                {"identity": p.identity, "label": p.label, "expected_count": p.expected_count}
                for p in publishers
            ],
            "subscribers": [
                {
                    "identity": s.identity,
                    "label": s.label,
                    "resend": s.resend.to_value(),
                    "joined_at": s.joined_at,
                    "not_started": s.not_started,
                    "start_failed": s.start_failed,
                }
                for s in subscribers
            ],
            "sent": {
                pub: [[e.payload, e.timestamp] for e in seq.snapshot()]
                for pub, seq in list(self._sent.items())
            },
            "received": self._received_to_dict(),
            "failures": [
                {"subscriber": f.subscriber, "reason": f.reason, "timestamp": f.timestamp}
                for f in self.failures()
            ],
            "late_events": self.late_events,
        }

    def _received_to_dict(self) -> dict[str, dict[str, list[list[Any]]]]:
        result: dict[str, dict[str, list[list[Any]]]] = {}
        for pub, sub, seq in self._iter_received():
            result.setdefault(pub, {})[sub] = [[e.payload, e.timestamp] for e in seq.snapshot()]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MessageLedger:
        """Rebuild a closed ledger from to_dict() output.

        Raises:
            LedgerError: If the data is not a ledger dump
        """
        ledger = cls()
        try:
            for p in data.get("publishers", []):
                ledger.register_publisher(p["identity"], p.get("label", ""), p.get("expected_count"))
            for s in data.get("subscribers", []):
                ledger.register_subscriber(
                    s["identity"],
                    s.get("label", ""),
                    ResendDirective.from_value(s.get("resend")),
                )
                if s.get("joined_at") is not None:
                    ledger.mark_joined(s["identity"], s["joined_at"])
                if s.get("not_started") is not None:
                    ledger.mark_not_started(s["identity"], s["not_started"], bool(s.get("start_failed")))
            for pub, entries in data.get("sent", {}).items():
                for payload, timestamp in entries:
                    ledger.record_sent(pub, payload, timestamp)
            for pub, inner in data.get("received", {}).items():
                for sub, entries in inner.items():
                    ledger._ensure_received(normalize_identity(pub), normalize_identity(sub))
                    for payload, timestamp in entries:
                        ledger.record_received(pub, sub, payload, timestamp)
            for f in data.get("failures", []):
                ledger.record_failure(f["subscriber"], f.get("reason", ""))
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"Invalid ledger data: {e}") from e
        ledger._late_events = int(data.get("late_events", 0))
        ledger.close()
        return ledger

    def dump(self, path: Path) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, path: Path) -> MessageLedger:
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise LedgerError(f"Cannot read ledger {path}: {e}") from e
        if not isinstance(data, dict):
            raise LedgerError(f"Ledger {path} is not a JSON object")
        return cls.from_dict(data)
