"""Tests for the stream-conformance exception hierarchy."""

from __future__ import annotations

import pytest

from stream_conformance.exceptions import (
    AgentStartError,
    ConfigError,
    ConformanceError,
    DecryptionError,
    LedgerError,
    PermissionDeniedError,
    ProtocolError,
    PublishError,
    SetupError,
    StreamClientError,
)


class TestExceptionHierarchy:
    """Test that all exceptions inherit from ConformanceError."""

    @pytest.mark.parametrize(
        "cls",
        [
            ConfigError,
            SetupError,
            AgentStartError,
            PublishError,
            StreamClientError,
            PermissionDeniedError,
            DecryptionError,
            ProtocolError,
            LedgerError,
        ],
    )
    def test_inherits_from_base(self, cls):
        """Every error can be caught as ConformanceError."""
        error = cls("boom")
        assert isinstance(error, ConformanceError)
        assert isinstance(error, Exception)

    def test_agent_start_error_is_setup_error(self):
        """A failed agent start is a setup failure."""
        assert isinstance(AgentStartError("x"), SetupError)

    def test_permission_denied_is_client_error(self):
        """Missing permissions surface as client errors."""
        assert isinstance(PermissionDeniedError("x"), StreamClientError)


class TestExceptionChaining:
    """Test that wrapped errors keep their cause."""

    def test_chained_cause(self):
        """raise ... from keeps the original exception."""
        original = OSError("connection refused")
        with pytest.raises(SetupError) as exc_info:
            try:
                raise original
            except OSError as e:
                raise SetupError("Failed to create the test stream") from e
        assert exc_info.value.__cause__ is original

    def test_message_preserved(self):
        """The message is available through str()."""
        assert str(PublishError("publisher 0xabc failed")) == "publisher 0xabc failed"
