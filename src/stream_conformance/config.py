"""Run configuration loaded from YAML, environment and CLI flags."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigError

ENV_PREFIX = "STREAM_CONFORMANCE_"


@dataclass
class Participants:
    """How many agents of each kind a topology builds."""

    native_publishers: int = 1
    native_subscribers: int = 1
    external_publishers: int = 0
    external_subscribers: int = 0

    @property
    def publishers(self) -> int:
        return self.native_publishers + self.external_publishers

    @property
    def subscribers(self) -> int:
        return self.native_subscribers + self.external_subscribers

    @property
    def needs_external(self) -> bool:
        return self.external_publishers > 0 or self.external_subscribers > 0

    def to_dict(self) -> dict[str, int]:
        return {
            "native_publishers": self.native_publishers,
            "native_subscribers": self.native_subscribers,
            "external_publishers": self.external_publishers,
            "external_subscribers": self.external_subscribers,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Participants:
        return cls(
            native_publishers=int(data.get("native_publishers", 1)),
            native_subscribers=int(data.get("native_subscribers", 1)),
            external_publishers=int(data.get("external_publishers", 0)),
            external_subscribers=int(data.get("external_subscribers", 0)),
        )


@dataclass
class RunConfig:
    """Configuration of one conformance run. Durations are in seconds."""

    rest_url: str = "http://localhost/api/v1"
    """REST endpoint of the stream service"""

    websocket_url: str = "ws://localhost/api/v1/ws"
    """WebSocket endpoint of the stream service"""

    min_interval: float = 1.0
    """Lower bound of the per-publisher interval draw"""

    max_interval: float = 2.0
    """Upper bound (exclusive) of the per-publisher interval draw"""

    max_messages: int = 10
    """Messages per publisher (0 = publish until stopped)"""

    test_correctness: bool = True
    """Record messages and reconcile after the run"""

    network_setup_delay: float = 5.0
    """Warm-up between subscribing and the first publish"""

    propagation_delay: float = 5.0
    """Cool-down between stopping publishers and stopping subscribers"""

    poll_interval: float = 1.0
    """How often the controller checks whether publishers are done"""

    over_receipt_tolerance: int = 1
    """Extra messages a subscriber may receive before it looks like duplication"""

    strict_over_receipt: bool = False
    """Fail the run (instead of warning) on over-receipt beyond the tolerance"""

    resend_from_delay: float = 2.0
    """Extra join delay of the resend-from subscriber"""

    resend_last_delay: float = 4.0
    """Extra join delay of the resend-last subscriber"""

    resend_last_count: int = 1000
    """How many messages the resend-last subscriber asks for"""

    shared_rotation_period: int = 5
    """Rotation period for the shared-key rotating topology"""

    exchanged_rotation_period: int = 10
    """Rotation period for the key-exchange topologies"""

    revocation_period: int = 20
    """Revocation period for the revoking topology"""

    external_command: str | None = None
    """Command line starting an external agent (shell-style quoting)"""

    external_label: str = "external"
    """Implementation label of external agents"""

    native_label: str = "python"
    """Implementation label of native agents"""

    stop_timeout: float = 5.0
    """How long to wait for an agent to stop before killing it"""

    startup_grace: float = 0.5
    """How long an external agent must stay alive to count as started"""

    seed: int | None = None
    """Seed for interval draws and payloads"""

    participants: Participants = field(default_factory=Participants)

    @property
    def infinite(self) -> bool:
        return self.max_messages == 0

    def validate(self) -> RunConfig:
        """Check the configuration and return it.

        Raises:
            ConfigError: If any setting is out of range
        """
        if self.min_interval <= 0 or self.max_interval <= 0:
            raise ConfigError("Publish intervals must be positive")
        if self.min_interval > self.max_interval:
            raise ConfigError(
                f"min_interval ({self.min_interval}) is greater than max_interval ({self.max_interval})"
            )
        if self.max_messages < 0:
            raise ConfigError("max_messages cannot be negative")
        if self.over_receipt_tolerance < 0:
            raise ConfigError("over_receipt_tolerance cannot be negative")
        for name in ("shared_rotation_period", "exchanged_rotation_period", "revocation_period"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.revocation_period % self.exchanged_rotation_period != 0:
            raise ConfigError(
                f"revocation_period ({self.revocation_period}) must be a multiple of "
                f"exchanged_rotation_period ({self.exchanged_rotation_period})"
            )
        if self.resend_last_count <= 0:
            raise ConfigError("resend_last_count must be positive")
        counts = self.participants.to_dict()
        if any(v < 0 for v in counts.values()):
            raise ConfigError("Participant counts cannot be negative")
        if self.participants.needs_external and not self.external_command:
            raise ConfigError("External participants require external_command")
        return self

    def to_dict(self) -> dict[str, Any]:
        result = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "participants"}
        result["participants"] = self.participants.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RunConfig:
        """Create from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)} - {"participants"}
        kwargs = {k: v for k, v in data.items() if k in known}
        participants = Participants.from_dict(data.get("participants") or {})
        try:
            return cls(participants=participants, **kwargs)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: Path) -> RunConfig:
        """Load config from a YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        return cls.from_dict(data)

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> RunConfig:
        """Apply STREAM_CONFORMANCE_<FIELD> environment variables.

        Values are parsed with YAML scalar rules, so ``true``/``3``/``0.5``
        get their natural types.
        """
        environ = os.environ if environ is None else environ
        updates: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "participants":
                continue
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                updates[f.name] = yaml.safe_load(raw) if raw.strip() else None
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from e
        return replace(self, **updates) if updates else self

    def with_overrides(self, **overrides: Any) -> RunConfig:
        """Return a copy with the given non-None fields replaced."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **updates) if updates else self
