"""
Provisioning Pipeline - Clone, configure, address, boot and verify target VMs

Steps run strictly in order; any failure rolls back the partially created
instance and raises ProvisionError:
1. clone     - clone the tier base image under a fresh VM id
2. configure - apply the tier's configuration commands
3. address   - allocate a tier address and reserve it with the hypervisor
4. start     - boot and wait for the grace period
5. verify    - the VM holds its reserved address and every tier service accepts connections
6. baseline  - take the baseline snapshot
"""

import asyncio
import secrets
from typing import Optional, Union

import structlog

from ..exceptions import ProvisionError
from ..models import BASELINE_SNAPSHOT, Tier, VMRecord, VMStatus
from ..tiers import get_tier
from .health_checker import HealthChecker
from .hypervisor import HypervisorClient
from .ip_allocator import IPAllocator
from .snapshot_manager import SnapshotManager

logger = structlog.get_logger(__name__)


class ProvisioningPipeline:
    """Produces running, verified VMs. Registration is left to the caller."""

    VM_ID_PREFIX = "nexus"

    def __init__(
        self,
        hypervisor: HypervisorClient,
        ip_allocator: IPAllocator,
        health_checker: HealthChecker,
        snapshot_manager: SnapshotManager,
        boot_grace_period: float = 10.0,
    ):
        self.hypervisor = hypervisor
        self.ip_allocator = ip_allocator
        self.health_checker = health_checker
        self.snapshot_manager = snapshot_manager
        self.boot_grace_period = boot_grace_period

    def generate_vm_id(self, tier: Tier, round_id: str) -> str:
        return f"{self.VM_ID_PREFIX}-{tier.value}-{round_id}-{secrets.token_hex(4)}"

    async def provision(self, tier: Union[Tier, str], round_id: str) -> VMRecord:
        """
        Run the full pipeline for one VM.

        Returns:
            VMRecord with status running, not yet registered

        Raises:
            ProvisionError: If any step fails
        """
        try:
            definition = get_tier(tier)
        except ValueError as e:
            raise ProvisionError(f"unknown tier {tier!r}") from e

        vm_id = self.generate_vm_id(definition.tier, round_id)
        step = "clone"
        address: Optional[str] = None

        logger.info(
            "Provisioning VM",
            vm_id=vm_id,
            tier=definition.tier.value,
            round_id=round_id,
        )

        try:
            await self.hypervisor.clone(definition.base_image, vm_id)

            step = "configure"
            for command in definition.configuration_commands:
                await self.hypervisor.run_command(vm_id, command)

            step = "address"
            address = self.ip_allocator.allocate(definition.tier)
            await self.hypervisor.reserve_address(vm_id, address)

            step = "start"
            await self.hypervisor.start(vm_id)
            if self.boot_grace_period:
                await asyncio.sleep(self.boot_grace_period)

            step = "verify"
            assigned = await self.hypervisor.get_assigned_address(vm_id)
            if assigned is None:
                raise ProvisionError("VM has no address", vm_id, step)
            if assigned != address:
                raise ProvisionError(
                    f"VM holds {assigned}, reserved address is {address}", vm_id, step
                )
            health = await self.health_checker.check_services(address, definition.services)
            if not health.healthy:
                raise ProvisionError(f"services failed to start ({health.reason})", vm_id, step)

            step = "baseline"
            await self.snapshot_manager.create_snapshot(vm_id, BASELINE_SNAPSHOT)

        except ProvisionError as e:
            logger.error("Failed to provision VM", vm_id=vm_id, step=step, error=str(e))
            await self._rollback(vm_id)
            raise

        except Exception as e:
            logger.error("Failed to provision VM", vm_id=vm_id, step=step, error=str(e))
            await self._rollback(vm_id)
            raise ProvisionError(str(e), vm_id, step) from e

        logger.info(
            "VM provisioned",
            vm_id=vm_id,
            tier=definition.tier.value,
            round_id=round_id,
            ip_address=address,
        )

        return VMRecord(
            id=vm_id,
            tier=definition.tier,
            round_id=round_id,
            ip_address=address,
            services=list(definition.services),
            status=VMStatus.RUNNING,
            restart_attempts=0,
        )

    async def _rollback(self, vm_id: str) -> None:
        """Best-effort cleanup of a partially created VM."""
        self.snapshot_manager.forget(vm_id)

        try:
            await self.hypervisor.force_stop(vm_id)
        except Exception as e:
            logger.debug("Rollback stop failed", vm_id=vm_id, error=str(e))

        try:
            await self.hypervisor.destroy_and_remove_storage(vm_id)
        except Exception as e:
            logger.error("Rollback cleanup failed", vm_id=vm_id, error=str(e))
