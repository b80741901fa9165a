"""
Insight workflow - client construction and component wiring.

``create_core_clients`` builds the production I/O adapters;
``create_insight_services`` wires the classifier, template matcher,
funnel engine, orchestrator and refiner around them.
"""

from .clients import CoreClients, create_core_clients
from .workflow import InsightServices, create_insight_services

__all__ = [
    "CoreClients",
    "InsightServices",
    "create_core_clients",
    "create_insight_services",
]
