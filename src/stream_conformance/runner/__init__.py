"""Run orchestration: topologies, subscriptions and the run controller."""

from .controller import RunController
from .subscriptions import ManagedSubscriber, SubscriberState, SubscriptionManager
from .topologies import TOPOLOGIES, TOPOLOGY_NAMES, Topology, TopologyBuilder, get_topology

__all__ = [
    "RunController",
    "ManagedSubscriber",
    "SubscriberState",
    "SubscriptionManager",
    "TOPOLOGIES",
    "TOPOLOGY_NAMES",
    "Topology",
    "TopologyBuilder",
    "get_topology",
]
