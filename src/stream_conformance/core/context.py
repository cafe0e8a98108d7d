"""Run context shared by every component of a run."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable

from ..config import RunConfig
from .client import now_ms
from .keys import KeyProvider, address_from_private_key
from .ledger import MessageLedger


@dataclass
class RunContext:
    """Everything a component needs from its run.

    Components receive the context at construction; nothing reads run
    state from module globals.
    """

    config: RunConfig
    ledger: MessageLedger = field(default_factory=MessageLedger)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("stream_conformance.run"))
    key_provider: KeyProvider = field(default_factory=KeyProvider)
    rng: random.Random = field(default_factory=random.Random)
    clock: Callable[[], int] = now_ms
    identity_of: Callable[[str], str] = address_from_private_key
    """Maps a private key to the identity its agent will use"""

    @classmethod
    def create(cls, config: RunConfig, name: str = "run") -> RunContext:
        return cls(
            config=config,
            logger=logging.getLogger(f"stream_conformance.run.{name}"),
            rng=random.Random(config.seed),
        )
