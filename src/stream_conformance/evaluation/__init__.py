"""Evaluation of a finished run: reconciliation, verdict and metrics."""

from .metrics import RunMetrics
from .reconciler import Reconciler
from .verdict import Finding, FindingKind, RunVerdict, Severity

__all__ = [
    "RunMetrics",
    "Reconciler",
    "Finding",
    "FindingKind",
    "RunVerdict",
    "Severity",
]
