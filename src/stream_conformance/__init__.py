"""stream-conformance - end-to-end conformance testing for pub/sub stream clients."""

__version__ = "0.1.0"

from .config import Participants, RunConfig
from .core.context import RunContext
from .core.ledger import MessageLedger
from .core.protocol import ResendDirective
from .evaluation.reconciler import Reconciler
from .evaluation.verdict import RunVerdict
from .runner.controller import RunController
from .runner.topologies import TOPOLOGY_NAMES

__all__ = [
    "Participants",
    "RunConfig",
    "RunContext",
    "MessageLedger",
    "ResendDirective",
    "Reconciler",
    "RunVerdict",
    "RunController",
    "TOPOLOGY_NAMES",
]
