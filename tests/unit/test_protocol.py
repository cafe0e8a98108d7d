"""Tests for resend directives and the external agent line protocol."""

from __future__ import annotations

import pytest

from stream_conformance.core.protocol import (
    LineKind,
    ResendDirective,
    ResendKind,
    format_published_line,
    format_received_line,
    parse_agent_line,
)
from stream_conformance.exceptions import ProtocolError


class TestResendDirective:
    """Tests for ResendDirective construction and codec."""

    def test_default_is_live(self):
        """A directive without arguments is real-time only."""
        directive = ResendDirective()
        assert directive.kind == ResendKind.NONE
        assert directive.is_live

    def test_last_messages(self):
        """last_messages builds a last-K directive."""
        directive = ResendDirective.last_messages(1000)
        assert directive.kind == ResendKind.LAST
        assert directive.last == 1000
        assert not directive.is_live

    def test_last_messages_rejects_non_positive(self):
        """A resend of zero messages is meaningless."""
        with pytest.raises(ProtocolError):
            ResendDirective.last_messages(0)

    def test_to_value_shapes(self):
        """Directives encode to the values external agents expect."""
        assert ResendDirective.live().to_value() == "real-time"
        assert ResendDirective.last_messages(10).to_value() == {"last": 10}
        assert ResendDirective.from_time(1700000000000, 3).to_value() == {
            "from": {"timestamp": 1700000000000, "sequenceNumber": 3}
        }

    def test_to_json_is_compact(self):
        """JSON encoding has no spaces so it survives argv splitting."""
        assert ResendDirective.last_messages(5).to_json() == '{"last":5}'

    def test_from_json_accepts_unquoted_live(self):
        """The live directive may be passed without JSON quotes."""
        assert ResendDirective.from_json("real-time").is_live
        assert ResendDirective.from_json('"real-time"').is_live

    def test_from_json_decodes_from(self):
        """A from directive without sequence number defaults it to 0."""
        directive = ResendDirective.from_json('{"from": {"timestamp": 42}}')
        assert directive.kind == ResendKind.FROM
        assert directive.from_timestamp == 42
        assert directive.from_sequence_number == 0

    @pytest.mark.parametrize("text", ['{"last": "many"}', '{"from": {}}', '{"other": 1}', "[1, 2]", "sometimes"])
    def test_from_json_rejects_malformed(self, text):
        """Unknown or malformed directives raise ProtocolError."""
        with pytest.raises(ProtocolError):
            ResendDirective.from_json(text)


class TestExpectedStart:
    """Tests for the first message a directive promises."""

    TIMESTAMPS = [100, 200, 300, 400, 500]

    def test_from_timestamp(self):
        """from-T starts at the first message sent at or after T."""
        assert ResendDirective.from_time(250).expected_start(self.TIMESTAMPS, None) == 2
        assert ResendDirective.from_time(300).expected_start(self.TIMESTAMPS, None) == 2

    def test_from_before_everything(self):
        """A reference time before the first message covers everything."""
        assert ResendDirective.from_time(0).expected_start(self.TIMESTAMPS, None) == 0

    def test_last_k_counts_back_from_join(self):
        """last-K covers the K messages sent before the join."""
        directive = ResendDirective.last_messages(2)
        assert directive.expected_start(self.TIMESTAMPS, joined_at=450) == 2

    def test_last_k_larger_than_history(self):
        """A K larger than the history starts at the beginning."""
        directive = ResendDirective.last_messages(1000)
        assert directive.expected_start(self.TIMESTAMPS, joined_at=450) == 0

    def test_last_k_includes_join_instant(self):
        """A message stamped at the join time was already in history."""
        directive = ResendDirective.last_messages(1)
        assert directive.expected_start(self.TIMESTAMPS, joined_at=300) == 2


class TestLineProtocol:
    """Tests for parsing external agent output."""

    def test_published_line(self):
        """Published lines carry the payload verbatim."""
        line = parse_agent_line(format_published_line('{"a":1}') + "\n")
        assert line.kind == LineKind.PUBLISHED
        assert line.payload == '{"a":1}'

    def test_received_line(self):
        """Received lines carry the publisher and the payload."""
        line = parse_agent_line(format_received_line("0xABC", '{"a":1}'))
        assert line.kind == LineKind.RECEIVED
        assert line.publisher_id == "0xABC"
        assert line.payload == '{"a":1}'

    def test_payload_may_contain_separator(self):
        """Only the first separator splits publisher from payload."""
        line = parse_agent_line("Received: 0xabc###a###b")
        assert line.publisher_id == "0xabc"
        assert line.payload == "a###b"

    def test_received_without_separator_is_diagnostic(self):
        """A Received line without publisher is not an event."""
        assert parse_agent_line("Received: something").kind == LineKind.DIAGNOSTIC

    def test_decryption_failure_line(self):
        """Decryption failures are reported as their own kind."""
        line = parse_agent_line("Decryption failed: no key abc")
        assert line.kind == LineKind.DECRYPTION_FAILED
        assert line.payload == "no key abc"

    def test_other_output_is_diagnostic(self):
        """Anything else is diagnostic."""
        line = parse_agent_line("Connecting to ws://localhost\r\n")
        assert line.kind == LineKind.DIAGNOSTIC
        assert line.text == "Connecting to ws://localhost"

    def test_published_line_with_timestamp(self):
        """An agent may report the timestamp it published with."""
        text = format_published_line('{"a":1}', timestamp=1700000000123)
        assert text == 'Published: 1700000000123###{"a":1}'
        line = parse_agent_line(text)
        assert line.kind == LineKind.PUBLISHED
        assert line.payload == '{"a":1}'
        assert line.timestamp == 1700000000123

    def test_published_line_without_timestamp(self):
        """Without a numeric prefix the whole rest is the payload."""
        line = parse_agent_line('Published: {"a":"x###y"}')
        assert line.payload == '{"a":"x###y"}'
        assert line.timestamp is None
