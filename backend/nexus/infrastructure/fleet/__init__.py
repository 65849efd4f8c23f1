"""
Nexus Range - Target VM Fleet

Disposable target VMs for exercise rounds:
- Provisioning from tier base images
- Baseline snapshots and restore
- Periodic health checks with bounded automatic recovery
"""

from .exceptions import (
    FleetError,
    ProvisionError,
    RestoreError,
    RoundNotFoundError,
    SnapshotError,
    VMNotFoundError,
)
from .models import HealthStatus, SnapshotRecord, Tier, VMRecord, VMStatus
from .services.fleet_manager import FleetManager

__all__ = [
    "FleetManager",
    "FleetError",
    "ProvisionError",
    "RestoreError",
    "RoundNotFoundError",
    "SnapshotError",
    "VMNotFoundError",
    "HealthStatus",
    "SnapshotRecord",
    "Tier",
    "VMRecord",
    "VMStatus",
]
