"""Multi-node orchestration of daemon runners.

Each node runs on its own thread from build through start; the only state
shared between them is the cleanup registry. Shutdown fans out to every
registered node at once so a fleet stops in parallel rather than serially.
"""

from nodefleet.orchestrator.nodes import FleetRunSummary, NodeDescriptor
from nodefleet.orchestrator.supervisor import BinarySource, FleetSupervisor, RunnerFactory

__all__ = [
    "BinarySource",
    "FleetRunSummary",
    "FleetSupervisor",
    "NodeDescriptor",
    "RunnerFactory",
]
