"""
Fleet Models - Data classes for target VMs, tiers, snapshots and health results
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


BASELINE_SNAPSHOT = "baseline"


class Tier(str, Enum):
    """Target VM tiers."""
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"


class VMStatus(str, Enum):
    """Target VM lifecycle statuses."""
    PROVISIONING = "provisioning"
    RUNNING = "running"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ServiceSpec:
    """A service a target VM must expose."""
    name: str
    port: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "port": self.port}


@dataclass(frozen=True)
class TierDefinition:
    """
    Static configuration for a tier.

    The configuration commands are applied in order to every freshly
    cloned instance of the tier.
    """
    tier: Tier
    base_image: str
    services: Tuple[ServiceSpec, ...]
    configuration_commands: Tuple[str, ...] = ()


@dataclass
class HealthStatus:
    """Health check result for a VM."""
    healthy: bool
    checks: Dict[str, bool] = field(default_factory=dict)
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "checks": self.checks,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class SnapshotRecord:
    """A named disk snapshot of a VM."""
    vm_id: str
    name: str
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vm_id": self.vm_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class VMRecord:
    """
    Represents a provisioned target VM.

    Owned by the fleet registry; the health monitor and failure handler
    update status, restart_attempts and the last health result in place.
    """
    id: str
    tier: Tier
    round_id: str
    ip_address: str
    services: List[ServiceSpec] = field(default_factory=list)
    status: VMStatus = VMStatus.PROVISIONING
    restart_attempts: int = 0

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_health_check: Optional[datetime] = None
    last_health: Optional[HealthStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary representation."""
        return {
            "id": self.id,
            "tier": self.tier.value,
            "round_id": self.round_id,
            "ip_address": self.ip_address,
            "services": [service.to_dict() for service in self.services],
            "status": self.status.value,
            "restart_attempts": self.restart_attempts,
            "created_at": self.created_at.isoformat(),
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "last_health": self.last_health.to_dict() if self.last_health else None,
        }

    def is_recoverable(self) -> bool:
        """Check if automatic recovery may still act on this VM."""
        return self.status in [VMStatus.RUNNING, VMStatus.DEGRADED]

    def record_health(self, health: HealthStatus) -> None:
        """Store the latest health result with timestamp tracking."""
        self.last_health = health
        self.last_health_check = health.timestamp
