"""Resend directives and the external agent line protocol."""

from __future__ import annotations

import bisect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

from ..exceptions import ProtocolError


class ResendKind(str, Enum):
    """How a subscriber asks for history."""

    NONE = "real-time"
    LAST = "last"
    FROM = "from"


@dataclass(frozen=True)
class ResendDirective:
    """A subscriber's request for historical messages."""

    kind: ResendKind = ResendKind.NONE
    """Resend mode"""

    last: int | None = None
    """Number of messages to resend (for kind=last)"""

    from_timestamp: int | None = None
    """Epoch milliseconds to resend from (for kind=from)"""

    from_sequence_number: int = 0
    """Sequence number within from_timestamp (for kind=from)"""

    @classmethod
    def live(cls) -> ResendDirective:
        return cls()

    @classmethod
    def last_messages(cls, count: int) -> ResendDirective:
        if count <= 0:
            raise ProtocolError(f"resend last count must be positive, got {count}")
        return cls(kind=ResendKind.LAST, last=count)

    @classmethod
    def from_time(cls, timestamp: int, sequence_number: int = 0) -> ResendDirective:
        return cls(
            kind=ResendKind.FROM,
            from_timestamp=int(timestamp),
            from_sequence_number=sequence_number,
        )

    @property
    def is_live(self) -> bool:
        """True when the subscriber only wants real-time delivery."""
        return self.kind == ResendKind.NONE

    def expected_start(self, sent_timestamps: Sequence[int], joined_at: int | None) -> int:
        """Index of the first sent message this directive promises.

        Args:
            sent_timestamps: Publish timestamps of one publisher, in publish order
            joined_at: Epoch milliseconds at which the subscriber joined

        Returns:
            Position in the sent sequence the subscriber must start at or before
        """
        if self.kind == ResendKind.FROM:
            return bisect.bisect_left(sent_timestamps, self.from_timestamp or 0)
        if self.kind == ResendKind.LAST:
            if joined_at is None:
                return 0
            before_join = bisect.bisect_right(sent_timestamps, joined_at)
            return max(0, before_join - (self.last or 0))
        if joined_at is None:
            return 0
        return bisect.bisect_left(sent_timestamps, joined_at)

    def to_value(self) -> Any:
        """Convert to the JSON value passed to external agents."""
        if self.kind == ResendKind.LAST:
            return {"last": self.last}
        if self.kind == ResendKind.FROM:
            return {
                "from": {
                    "timestamp": self.from_timestamp,
                    "sequenceNumber": self.from_sequence_number,
                }
            }
        return ResendKind.NONE.value

    def to_json(self) -> str:
        return json.dumps(self.to_value(), separators=(",", ":"))

    @classmethod
    def from_value(cls, value: Any) -> ResendDirective:
        """Create from a decoded JSON value.

        Raises:
            ProtocolError: If the value is not a known directive shape
        """
        if value is None or value == ResendKind.NONE.value:
            return cls.live()
        if isinstance(value, dict):
            if "last" in value:
                try:
                    return cls.last_messages(int(value["last"]))
                except (TypeError, ValueError) as e:
                    raise ProtocolError(f"Invalid resend last value: {value['last']!r}") from e
            if "from" in value and isinstance(value["from"], dict):
                ref = value["from"]
                try:
                    return cls.from_time(
                        int(ref["timestamp"]),
                        int(ref.get("sequenceNumber", 0)),
                    )
                except (KeyError, TypeError, ValueError) as e:
                    raise ProtocolError(f"Invalid resend from value: {ref!r}") from e
        raise ProtocolError(f"Unknown resend directive: {value!r}")

    @classmethod
    def from_json(cls, text: str) -> ResendDirective:
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            # The live directive is often passed unquoted on command lines
            value = text.strip()
        return cls.from_value(value)


class LineKind(str, Enum):
    """Classification of one stdout line from an external agent."""

    PUBLISHED = "published"
    RECEIVED = "received"
    DECRYPTION_FAILED = "decryption_failed"
    DIAGNOSTIC = "diagnostic"


PUBLISHED_PREFIX = "Published: "
RECEIVED_PREFIX = "Received: "
DECRYPTION_FAILED_PREFIX = "Decryption failed: "
PUBLISHER_SEPARATOR = "###"


@dataclass(frozen=True)
class AgentLine:
    """One parsed stdout line."""

    kind: LineKind
    payload: str | None = None
    publisher_id: str | None = None
    text: str = ""
    timestamp: int | None = None
    """Publish time reported by the agent, epoch milliseconds"""


def format_published_line(payload: str, timestamp: int | None = None) -> str:
    """Format the line an agent prints after a successful publish.

    Agents that know the timestamp they published with put it in front of
    the payload, so resend checks use the message time rather than the
    time the line was read.
    """
    if timestamp is None:
        return f"{PUBLISHED_PREFIX}{payload}"
    return f"{PUBLISHED_PREFIX}{timestamp}{PUBLISHER_SEPARATOR}{payload}"


def format_received_line(publisher_id: str, payload: str) -> str:
    """Format the line an agent prints after receiving a message."""
    return f"{RECEIVED_PREFIX}{publisher_id}{PUBLISHER_SEPARATOR}{payload}"


def parse_agent_line(line: str) -> AgentLine:
    """Parse one line of external agent output.

    Anything that does not carry a known prefix, including a Received line
    without a publisher separator, is diagnostic output.

    Args:
        line: Raw stdout line (trailing newline allowed)

    Returns:
        AgentLine describing the event
    """
    text = line.rstrip("\r\n")
    if text.startswith(PUBLISHED_PREFIX):
        payload = text[len(PUBLISHED_PREFIX):]
        timestamp = None
        head, sep, rest = payload.partition(PUBLISHER_SEPARATOR)
        if sep and head.isdigit():
            timestamp, payload = int(head), rest
        return AgentLine(
            kind=LineKind.PUBLISHED,
            payload=payload,
            text=text,
            timestamp=timestamp,
        )
    if text.startswith(RECEIVED_PREFIX):
        rest = text[len(RECEIVED_PREFIX):]
        publisher_id, sep, payload = rest.partition(PUBLISHER_SEPARATOR)
        if sep and publisher_id.strip():
            return AgentLine(
                kind=LineKind.RECEIVED,
                payload=payload,
                publisher_id=publisher_id.strip(),
                text=text,
            )
    if text.startswith(DECRYPTION_FAILED_PREFIX):
        return AgentLine(
            kind=LineKind.DECRYPTION_FAILED,
            payload=text[len(DECRYPTION_FAILED_PREFIX):],
            text=text,
        )
    return AgentLine(kind=LineKind.DIAGNOSTIC, text=text)
