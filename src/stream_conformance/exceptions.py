"""Custom exception hierarchy for stream-conformance.

This module provides a structured exception hierarchy that:
1. Separates fatal run errors (setup, publish) from per-message defects
2. Preserves context through exception chaining
3. Supports targeted error handling in the run controller and CLI

Usage:
    from stream_conformance.exceptions import (
        ConformanceError,
        SetupError,
        PublishError,
    )

    try:
        verdict = controller.run()
    except SetupError as e:
        print(f"Topology never came up: {e}")
    except PublishError as e:
        print(f"Publisher failed: {e}")
"""

from __future__ import annotations


class ConformanceError(Exception):
    """Base exception for all stream-conformance errors.

    All custom exceptions in this package inherit from this class,
    making it easy to catch any conformance error with a single
    except clause.
    """

    pass


class ConfigError(ConformanceError):
    """Invalid run configuration.

    Raised when:
    - The interval range is empty or negative
    - The revocation period is not a multiple of the rotation period
    - External participants are requested without an agent command
    - A config file is unreadable or not a mapping
    """

    pass


class SetupError(ConformanceError):
    """The topology could not be brought up.

    Raised when:
    - The creator client cannot connect
    - Stream creation fails
    - A permission grant is rejected
    """

    pass


class AgentStartError(SetupError):
    """An agent failed to start.

    Raised when:
    - A native client cannot connect or subscribe
    - An external agent process cannot be spawned
    - An external agent process exits during its startup grace period
    """

    pass


class PublishError(ConformanceError):
    """A publish tick raised.

    Always fatal to the run: a swallowed publish failure would leave the
    ledger expecting messages that were never sent.
    """

    pass


class StreamClientError(ConformanceError):
    """The wrapped stream client was misused.

    Raised when:
    - Publishing or subscribing before connect()
    - The target stream does not exist
    """

    pass


class PermissionDeniedError(StreamClientError):
    """The client lacks the stream permission for the operation."""

    pass


class DecryptionError(ConformanceError):
    """A message could not be decrypted or failed validation.

    Raised when:
    - No group key is known or obtainable for an encrypted message
    - A signature is required but missing
    """

    pass


class ProtocolError(ConformanceError):
    """Malformed resend directive or agent protocol value."""

    pass


class LedgerError(ConformanceError):
    """A ledger file could not be read back."""

    pass
