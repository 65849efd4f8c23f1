"""
Snapshot Manager - Create and restore named disk snapshots of target VMs

Restore sequence:
1. Graceful stop, forced stop if the guest does not power off in time
2. Revert to the named snapshot
3. Start and wait for boot
4. Re-verify every tier service

Both operations are bounded by a timeout.
"""

import asyncio
from typing import Dict, List

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from ..exceptions import HypervisorError, RestoreError, SnapshotError
from ..models import BASELINE_SNAPSHOT, SnapshotRecord, VMRecord
from .health_checker import HealthChecker
from .hypervisor import HypervisorClient

logger = structlog.get_logger(__name__)


class SnapshotManager:
    """Snapshot create/restore for fleet VMs. Never touches the registry."""

    def __init__(
        self,
        hypervisor: HypervisorClient,
        health_checker: HealthChecker,
        snapshot_timeout: float = 120.0,
        graceful_stop_timeout: float = 5.0,
        boot_grace_period: float = 10.0,
        stop_poll_interval: float = 0.5,
    ):
        self.hypervisor = hypervisor
        self.health_checker = health_checker
        self.snapshot_timeout = snapshot_timeout
        self.graceful_stop_timeout = graceful_stop_timeout
        self.boot_grace_period = boot_grace_period
        self.stop_poll_interval = stop_poll_interval

        self._snapshots: Dict[str, Dict[str, SnapshotRecord]] = {}

    async def create_snapshot(self, vm_id: str, name: str) -> SnapshotRecord:
        """
        Create a disk-only, atomic snapshot.

        Raises:
            SnapshotError: If the hypervisor fails or the timeout expires
        """
        try:
            await asyncio.wait_for(
                self.hypervisor.snapshot_create(vm_id, name),
                timeout=self.snapshot_timeout,
            )
        except asyncio.TimeoutError as e:
            raise SnapshotError(
                f"timed out after {self.snapshot_timeout}s", vm_id, name
            ) from e
        except HypervisorError as e:
            raise SnapshotError(str(e), vm_id, name) from e

        record = SnapshotRecord(vm_id=vm_id, name=name)
        self._snapshots.setdefault(vm_id, {})[name] = record

        logger.info("Snapshot created", vm_id=vm_id, snapshot=name)
        return record

    async def restore_snapshot(
        self,
        vm: VMRecord,
        name: str = BASELINE_SNAPSHOT,
    ) -> SnapshotRecord:
        """
        Restore a VM to a snapshot and verify its services.

        Args:
            vm: VM to restore (read only)
            name: Snapshot name, baseline by default

        Returns:
            SnapshotRecord describing the restored snapshot

        Raises:
            RestoreError: If any step fails or the timeout expires
        """
        try:
            await asyncio.wait_for(
                self._restore(vm, name),
                timeout=self.snapshot_timeout,
            )
        except asyncio.TimeoutError as e:
            raise RestoreError(
                f"timed out after {self.snapshot_timeout}s", vm.id, name
            ) from e
        except HypervisorError as e:
            raise RestoreError(str(e), vm.id, name) from e

        logger.info("VM restored", vm_id=vm.id, snapshot=name)
        return self._snapshots.get(vm.id, {}).get(name) or SnapshotRecord(vm_id=vm.id, name=name)

    def list_snapshots(self, vm_id: str) -> List[SnapshotRecord]:
        return list(self._snapshots.get(vm_id, {}).values())

    def forget(self, vm_id: str) -> None:
        """Drop snapshot records of a torn-down VM."""
        self._snapshots.pop(vm_id, None)

    async def stop_vm(self, vm_id: str) -> None:
        """Stop gracefully, falling back to a forced stop."""
        try:
            await self.hypervisor.graceful_stop(vm_id)
            if await self._wait_for_shutdown(vm_id):
                return
            logger.warning("Graceful stop timed out, forcing", vm_id=vm_id)
        except HypervisorError as e:
            logger.warning("Graceful stop failed, forcing", vm_id=vm_id, error=str(e))

        await self.hypervisor.force_stop(vm_id)

    async def _restore(self, vm: VMRecord, name: str) -> None:
        await self.stop_vm(vm.id)
        await self.hypervisor.snapshot_revert(vm.id, name)
        await self.hypervisor.start(vm.id)

        if self.boot_grace_period:
            await asyncio.sleep(self.boot_grace_period)

        health = await self.health_checker.check_services(vm.ip_address, vm.services)
        if not health.healthy:
            raise RestoreError(
                f"services failed after restore ({health.reason})", vm.id, name
            )

    async def _wait_for_shutdown(self, vm_id: str) -> bool:
        """Poll the run state until the VM is off; False if it never stops."""
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_result(lambda running: running),
                stop=stop_after_delay(self.graceful_stop_timeout),
                wait=wait_fixed(self.stop_poll_interval),
            ):
                with attempt:
                    running = await self.hypervisor.is_running(vm_id)
                if not attempt.retry_state.outcome.failed:
                    attempt.retry_state.set_result(running)
        except RetryError:
            return False
        return True
