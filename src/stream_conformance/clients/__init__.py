"""Stream client implementations and factory loading.

The only built-in implementation is the in-memory network. A real client
library is plugged in with ``--client-factory package.module:attribute``,
where the attribute is a ClientFactory or a builder function returning
one. A builder either takes no arguments or a single ``config`` argument,
which receives the RunConfig so the client can use its rest_url and
websocket_url endpoints.
"""

from __future__ import annotations

import importlib
import inspect
from typing import TYPE_CHECKING

from ..core.client import ClientFactory
from ..exceptions import ConfigError
from .memory import InMemoryClient, InMemoryNetwork, MemorySubscription

if TYPE_CHECKING:
    from ..config import RunConfig

MEMORY_FACTORY = "memory"


def load_client_factory(spec: str, config: RunConfig | None = None) -> ClientFactory:
    """Resolve a client factory reference.

    Args:
        spec: ``memory`` or ``module:attribute``
        config: Run configuration handed to builders that take ``config``

    Returns:
        A ClientFactory

    Raises:
        ConfigError: If the reference cannot be resolved
    """
    if spec == MEMORY_FACTORY:
        return InMemoryNetwork().client_factory

    module_name, sep, attribute = spec.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigError(f"Client factory must be '{MEMORY_FACTORY}' or 'module:attribute', got '{spec}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import client factory module '{module_name}': {e}") from e
    try:
        target = getattr(module, attribute)
    except AttributeError:
        raise ConfigError(f"Module '{module_name}' has no attribute '{attribute}'") from None
    if not callable(target):
        raise ConfigError(f"Client factory '{spec}' is not callable")
    if not inspect.isfunction(target):
        return target
    # Builders return the actual factory
    parameters = list(inspect.signature(target).parameters)
    if not parameters:
        return target()
    if parameters == ["config"]:
        if config is None:
            raise ConfigError(f"Client factory builder '{spec}' needs the run config")
        return target(config)
    return target


__all__ = [
    "InMemoryClient",
    "InMemoryNetwork",
    "MemorySubscription",
    "MEMORY_FACTORY",
    "load_client_factory",
]
