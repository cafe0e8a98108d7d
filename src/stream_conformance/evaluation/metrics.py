"""Metrics collected over a conformance run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class RunMetrics:
    """Counters describing a finished run."""

    duration_seconds: float = 0.0
    """Time from the first publish to the ledger close"""

    publishers: int = 0
    """Number of publishers in the topology"""

    subscribers: int = 0
    """Number of subscribers in the topology"""

    published: int = 0
    """Messages recorded as sent"""

    received: int = 0
    """Messages recorded as received, summed over every pair"""

    late_events: int = 0
    """Events that arrived after the ledger was closed"""

    extra: dict[str, Any] = field(default_factory=dict)
    """Topology-specific values"""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result = {
            "duration_seconds": self.duration_seconds,
            "publishers": self.publishers,
            "subscribers": self.subscribers,
            "published": self.published,
            "received": self.received,
            "late_events": self.late_events,
        }
        if self.extra:
            result["extra"] = self.extra
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunMetrics:
        """Create from dictionary."""
        return cls(
            duration_seconds=data.get("duration_seconds", 0.0),
            publishers=data.get("publishers", 0),
            subscribers=data.get("subscribers", 0),
            published=data.get("published", 0),
            received=data.get("received", 0),
            late_events=data.get("late_events", 0),
            extra=data.get("extra", {}),
        )

    @property
    def pairs(self) -> int:
        """Number of (publisher, subscriber) pairs."""
        return self.publishers * self.subscribers

    @property
    def expected_received(self) -> int:
        """Deliveries a lossless run of live subscribers would make."""
        return self.published * self.subscribers
