"""
Fleet Manager - Lifecycle management for exercise target VMs

Handles:
- Provisioning and registration of tier VMs per exercise round
- Health monitor scheduling (one loop per VM)
- Bounded automatic recovery through the failure handler
- Manual snapshot/restore for operators
- Single-VM and whole-round teardown
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

import structlog

from nexus.core.config import FleetSettings, get_settings

from ..exceptions import RoundNotFoundError
from ..models import BASELINE_SNAPSHOT, HealthStatus, SnapshotRecord, Tier, VMRecord, VMStatus
from .alerts import AlertDispatcher, AlertNotifier, LogAlertNotifier, WebhookAlertNotifier
from .failure_handler import FailureHandler
from .health_checker import HealthChecker, Prober
from .hypervisor import HypervisorClient, VirshHypervisor
from .ip_allocator import IPAllocator
from .probes import NetworkProber
from .provisioning import ProvisioningPipeline
from .registry import FleetRegistry
from .snapshot_manager import SnapshotManager

logger = structlog.get_logger(__name__)


class FleetManager:
    """
    Central manager for target VM lifecycle.

    Owns one registry and one address allocator; several managers can
    run side by side without sharing state.
    """

    def __init__(
        self,
        settings: Optional[FleetSettings] = None,
        hypervisor: Optional[HypervisorClient] = None,
        prober: Optional[Prober] = None,
        notifier: Optional[AlertNotifier] = None,
        registry: Optional[FleetRegistry] = None,
        ip_allocator: Optional[IPAllocator] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.hypervisor = hypervisor or VirshHypervisor(
            uri=s.libvirt_uri,
            network=s.libvirt_network,
            command_timeout=s.command_timeout,
        )
        self.registry = registry or FleetRegistry()
        self.ip_allocator = ip_allocator or IPAllocator(
            network_range=s.network_range,
            base_ip_start=s.base_ip_start,
            block_size=s.tier_block_size,
        )

        if notifier is None:
            if s.alert_webhook_url:
                notifier = WebhookAlertNotifier(s.alert_webhook_url, timeout=s.alert_timeout)
            else:
                notifier = LogAlertNotifier()
        self.alerts = AlertDispatcher(notifier)

        self.health_checker = HealthChecker(
            prober or NetworkProber(),
            check_interval=s.health_check_interval,
            timeout=s.probe_timeout,
        )
        self.snapshot_manager = SnapshotManager(
            self.hypervisor,
            self.health_checker,
            snapshot_timeout=s.snapshot_timeout,
            graceful_stop_timeout=s.graceful_stop_timeout,
            boot_grace_period=s.boot_grace_period,
        )
        self.pipeline = ProvisioningPipeline(
            self.hypervisor,
            self.ip_allocator,
            self.health_checker,
            self.snapshot_manager,
            boot_grace_period=s.boot_grace_period,
        )
        self.failure_handler = FailureHandler(
            self.registry,
            self.snapshot_manager,
            self.alerts,
            max_restart_attempts=s.max_restart_attempts,
        )

    async def start(self) -> None:
        """Resume monitoring for every registered VM."""
        for vm in self.registry.list_all():
            self._start_monitoring(vm)
        logger.info("Fleet manager started", vms=len(self.registry))

    async def stop(self) -> None:
        """Stop all monitors and flush pending alerts. VMs are left running."""
        for vm_id in self.registry.monitored_ids():
            await self.registry.cancel_monitor(vm_id)
        await self.alerts.drain()
        logger.info("Fleet manager stopped")

    async def provision(self, tier: Union[Tier, str], round_id: str) -> VMRecord:
        """
        Provision, register and start monitoring a VM.

        Raises:
            ProvisionError: If provisioning fails; nothing is registered
        """
        vm = await self.pipeline.provision(tier, round_id)
        self.registry.add(vm)
        self._start_monitoring(vm)
        return vm

    async def create_snapshot(self, vm_id: str, name: str) -> SnapshotRecord:
        """
        Snapshot a registered VM.

        Raises:
            VMNotFoundError: If the VM is unknown
            SnapshotError: If the snapshot fails
        """
        vm = self.registry.get(vm_id)
        return await self.snapshot_manager.create_snapshot(vm.id, name)

    async def restore_snapshot(
        self,
        vm_id: str,
        name: str = BASELINE_SNAPSHOT,
    ) -> SnapshotRecord:
        """
        Operator-initiated restore.

        A successful restore returns the VM to running with its attempt
        counter cleared, including VMs previously marked unavailable.
        Automatic recovery is locked out and the monitor is paused until
        the restore finishes.

        Raises:
            VMNotFoundError: If the VM is unknown
            RestoreError: If the restore fails
        """
        vm = self.registry.get(vm_id)

        async with self.registry.lifecycle_lock(vm_id):
            vm = self.registry.get(vm_id)
            monitored = await self.registry.cancel_monitor(vm_id)
            try:
                record = await self.snapshot_manager.restore_snapshot(vm, name)
                vm.status = VMStatus.RUNNING
                vm.restart_attempts = 0
            finally:
                if monitored and vm_id in self.registry:
                    self._start_monitoring(vm)

        logger.info("VM manually restored", vm_id=vm_id, snapshot=name)
        return record

    def list_snapshots(self, vm_id: str) -> List[SnapshotRecord]:
        self.registry.get(vm_id)
        return self.snapshot_manager.list_snapshots(vm_id)

    async def get_health(self, vm_id: str) -> HealthStatus:
        """
        Run a live health check without triggering recovery.

        Raises:
            VMNotFoundError: If the VM is unknown
        """
        vm = self.registry.get(vm_id)
        return await self.health_checker.check_once(vm)

    def get_vm(self, vm_id: str) -> VMRecord:
        """
        Get a VM record.

        Raises:
            VMNotFoundError: If the VM is unknown
        """
        return self.registry.get(vm_id)

    def list_by_round(self, round_id: str) -> List[VMRecord]:
        """List the VMs of a round in provisioning order."""
        return self.registry.list_by_round(round_id)

    async def delete_vm(self, vm_id: str) -> None:
        """
        Tear down a VM: stop monitoring, destroy it, drop its record.

        Raises:
            VMNotFoundError: If the VM is unknown
        """
        self.registry.get(vm_id)

        async with self.registry.lifecycle_lock(vm_id):
            self.registry.get(vm_id)
            await self.registry.cancel_monitor(vm_id)

            try:
                await self.snapshot_manager.stop_vm(vm_id)
            except Exception as e:
                logger.error("VM stop failed during teardown", vm_id=vm_id, error=str(e))

            try:
                await self.hypervisor.destroy_and_remove_storage(vm_id)
            except Exception as e:
                logger.error("VM cleanup failed during teardown", vm_id=vm_id, error=str(e))

            self.snapshot_manager.forget(vm_id)
            self.registry.remove(vm_id)

        logger.info("VM deleted", vm_id=vm_id)

    async def delete_round(self, round_id: str) -> List[str]:
        """
        Tear down every VM of a round concurrently.

        Returns:
            IDs of the deleted VMs

        Raises:
            RoundNotFoundError: If the round has no registered VMs
        """
        vms = self.registry.list_by_round(round_id)
        if not vms:
            raise RoundNotFoundError(round_id)

        vm_ids = [vm.id for vm in vms]
        results = await asyncio.gather(
            *(self.delete_vm(vm_id) for vm_id in vm_ids),
            return_exceptions=True,
        )

        deleted = []
        for vm_id, result in zip(vm_ids, results):
            if isinstance(result, Exception):
                logger.error("Round teardown failed for VM", vm_id=vm_id, error=str(result))
            else:
                deleted.append(vm_id)

        logger.info("Round deleted", round_id=round_id, vms=len(deleted))
        return deleted

    def get_metrics(self) -> Dict[str, Any]:
        """Get fleet metrics."""
        by_status = {status.value: 0 for status in VMStatus}
        for vm in self.registry.list_all():
            by_status[vm.status.value] += 1

        metrics = self.health_checker.get_metrics(len(self.registry.monitored_ids()))
        metrics.update(
            {
                "vms": len(self.registry),
                "by_status": by_status,
                "pending_alerts": self.alerts.pending,
                "max_restart_attempts": self.failure_handler.max_restart_attempts,
            }
        )
        return metrics

    def _start_monitoring(self, vm: VMRecord) -> None:
        task = self.health_checker.start(vm, self.failure_handler.handle)
        self.registry.attach_monitor(vm.id, task)
