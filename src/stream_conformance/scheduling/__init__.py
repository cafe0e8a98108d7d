"""Publish scheduling: periodic tasks, strategies and the scheduler."""

from .ticker import PeriodicTask
from .strategies import (
    STRATEGIES,
    DefaultStrategy,
    PublishedMessage,
    PublishStrategy,
    RotatingRevokingStrategy,
    RotatingStrategy,
    create_strategy,
)
from .scheduler import PublishScheduler, draw_interval

__all__ = [
    "PeriodicTask",
    "STRATEGIES",
    "DefaultStrategy",
    "PublishedMessage",
    "PublishStrategy",
    "RotatingRevokingStrategy",
    "RotatingStrategy",
    "create_strategy",
    "PublishScheduler",
    "draw_interval",
]
