"""Fleet services."""

from .fleet_manager import FleetManager
from .health_checker import HealthChecker
from .hypervisor import HypervisorClient, VirshHypervisor
from .ip_allocator import IPAllocator
from .provisioning import ProvisioningPipeline
from .registry import FleetRegistry
from .snapshot_manager import SnapshotManager

__all__ = [
    "FleetManager",
    "HealthChecker",
    "HypervisorClient",
    "VirshHypervisor",
    "IPAllocator",
    "ProvisioningPipeline",
    "FleetRegistry",
    "SnapshotManager",
]
