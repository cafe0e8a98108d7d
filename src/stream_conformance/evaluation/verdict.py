"""Verdict of a conformance run - findings, summary and report."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .metrics import RunMetrics


class Severity(str, Enum):
    """Whether a finding fails the run."""

    FAILURE = "failure"
    WARNING = "warning"


class FindingKind(str, Enum):
    """What a finding is about."""

    MESSAGE_LOSS = "message_loss"
    POSITION_MISMATCH = "position_mismatch"
    UNKNOWN_PAYLOAD = "unknown_payload"
    OVER_RECEIPT = "over_receipt"
    SUSPECTED_DUPLICATION = "suspected_duplication"
    PUBLISH_COUNT_DEVIATION = "publish_count_deviation"
    UNREGISTERED_PUBLISHER = "unregistered_publisher"
    DECRYPTION_FAILURE = "decryption_failure"
    NO_DELIVERY = "no_delivery"
    SUBSCRIBER_NOT_STARTED = "subscriber_not_started"


@dataclass
class Finding:
    """One reconciliation result worth reporting."""

    kind: FindingKind
    severity: Severity
    message: str

    publisher: str | None = None
    subscriber: str | None = None

    position: int | None = None
    """1-based position in the sent sequence, for positional findings"""

    expected: str | None = None
    actual: str | None = None

    sent: tuple[str, ...] | None = field(default=None, repr=False)
    """Full sent sequence of the publisher, for failing pairs"""

    received: tuple[str, ...] | None = field(default=None, repr=False)
    """Full received sequence of the pair, for failing pairs"""

    @property
    def is_failure(self) -> bool:
        return self.severity == Severity.FAILURE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        for name in ("publisher", "subscriber", "position", "expected", "actual"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        if self.sent is not None:
            result["sent"] = list(self.sent)
        if self.received is not None:
            result["received"] = list(self.received)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        """Create from dictionary."""
        return cls(
            kind=FindingKind(data["kind"]),
            severity=Severity(data["severity"]),
            message=data.get("message", ""),
            publisher=data.get("publisher"),
            subscriber=data.get("subscriber"),
            position=data.get("position"),
            expected=data.get("expected"),
            actual=data.get("actual"),
            sent=tuple(data["sent"]) if "sent" in data else None,
            received=tuple(data["received"]) if "received" in data else None,
        )


@dataclass
class RunVerdict:
    """Complete result of a conformance run."""

    topology: str = ""
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    total_published: int = 0
    total_received: int = 0

    messages_checked: int = 0
    """Received messages that were compared against the sent sequence"""

    decryption_failures: int = 0

    correctness_checked: bool = True
    """False in run mode, where nothing is verified"""

    findings: list[Finding] = field(default_factory=list)
    metrics: RunMetrics = field(default_factory=RunMetrics)

    error: str | None = None
    """Setup or publish error that aborted the run"""

    @property
    def failures(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.FAILURE]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def passed(self) -> bool:
        return self.error is None and not self.failures

    def summary(self) -> str:
        """One-line human readable result."""
        if self.error is not None:
            return f"FAILED: {self.error}"
        if not self.correctness_checked:
            return f"FINISHED. Published {self.total_published} messages without checking."
        if self.passed:
            text = f"PASSED. Checked all {self.messages_checked} messages."
            if self.warnings:
                text += f" {len(self.warnings)} warning(s)."
            return text
        failures = self.failures
        text = f"FAILED: {failures[0].message}"
        if len(failures) > 1:
            text += f" (and {len(failures) - 1} more failure(s))"
        return text

    def format_diagnostics(self) -> str:
        """Every finding, with full sent and received lists for failing pairs."""
        lines: list[str] = []
        for finding in self.findings:
            lines.append(f"[{finding.severity.value.upper()}] {finding.kind.value}: {finding.message}")
            if finding.position is not None:
                lines.append(f"  position: {finding.position}")
            if finding.expected is not None:
                lines.append(f"  expected: {finding.expected}")
            if finding.actual is not None:
                lines.append(f"  actual:   {finding.actual}")
            if finding.sent is not None:
                lines.append(f"  sent ({len(finding.sent)}):")
                lines.extend(f"    {i}. {payload}" for i, payload in enumerate(finding.sent, 1))
            if finding.received is not None:
                lines.append(f"  received ({len(finding.received)}):")
                lines.extend(f"    {i}. {payload}" for i, payload in enumerate(finding.received, 1))
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "topology": self.topology,
            "evaluated_at": self.evaluated_at.isoformat(),
            "passed": self.passed,
            "summary": self.summary(),
            "total_published": self.total_published,
            "total_received": self.total_received,
            "messages_checked": self.messages_checked,
            "decryption_failures": self.decryption_failures,
            "correctness_checked": self.correctness_checked,
            "findings": [f.to_dict() for f in self.findings],
            "metrics": self.metrics.to_dict(),
            "error": self.error,
        }

    def to_json(self, indent: int = 2) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def save(self, path: Path) -> None:
        """Save verdict to file."""
        Path(path).write_text(self.to_json())
