"""Publisher and subscriber agents."""

from .base import Agent, AgentKind, AgentRole, PublisherAgent, SubscriberAgent
from .native import NativePublisher, NativeSubscriber
from .external import ExternalProcess, ExternalPublisher, ExternalSubscriber, build_agent_argv

__all__ = [
    "Agent",
    "AgentKind",
    "AgentRole",
    "PublisherAgent",
    "SubscriberAgent",
    "NativePublisher",
    "NativeSubscriber",
    "ExternalProcess",
    "ExternalPublisher",
    "ExternalSubscriber",
    "build_agent_argv",
]
