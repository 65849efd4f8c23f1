"""
Fleet Registry - In-memory source of truth for VM records and monitor handles
"""

import asyncio
from typing import Dict, List, Optional

import structlog

from ..exceptions import VMNotFoundError
from ..models import VMRecord

logger = structlog.get_logger(__name__)


class FleetRegistry:
    """
    Tracks VM records and the health monitor task for each VM.

    At most one monitor task exists per VM id; attaching a new one
    cancels the previous task. Each VM also has a lifecycle lock held by
    whichever caller is stopping, reverting or destroying it.
    """

    def __init__(self):
        self._vms: Dict[str, VMRecord] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._vms)

    def __contains__(self, vm_id: object) -> bool:
        return vm_id in self._vms

    def add(self, vm: VMRecord) -> None:
        """Register a VM record."""
        if vm.id in self._vms:
            raise ValueError(f"VM already registered: {vm.id}")
        self._vms[vm.id] = vm

    def get(self, vm_id: str) -> VMRecord:
        """Get a VM record or raise VMNotFoundError."""
        vm = self._vms.get(vm_id)
        if vm is None:
            raise VMNotFoundError(vm_id)
        return vm

    def find(self, vm_id: str) -> Optional[VMRecord]:
        return self._vms.get(vm_id)

    def list_all(self) -> List[VMRecord]:
        return list(self._vms.values())

    def list_by_round(self, round_id: str) -> List[VMRecord]:
        """List VMs of a round in registration order."""
        return [vm for vm in self._vms.values() if vm.round_id == round_id]

    def remove(self, vm_id: str) -> VMRecord:
        """
        Remove a VM record.

        The monitor task must already be cancelled.
        """
        if vm_id in self._monitors:
            raise RuntimeError(f"Monitor still active for {vm_id}")
        vm = self.get(vm_id)
        del self._vms[vm_id]
        self._locks.pop(vm_id, None)
        return vm

    def lifecycle_lock(self, vm_id: str) -> asyncio.Lock:
        """Get the lock serialising lifecycle operations on a VM."""
        lock = self._locks.get(vm_id)
        if lock is None:
            lock = self._locks[vm_id] = asyncio.Lock()
        return lock

    def attach_monitor(self, vm_id: str, task: asyncio.Task) -> None:
        """Track the monitor task for a VM, replacing any previous one."""
        previous = self._monitors.get(vm_id)
        if previous is not None and previous is not task:
            previous.cancel()
            logger.debug("Replaced health monitor", vm_id=vm_id)
        self._monitors[vm_id] = task

    def get_monitor(self, vm_id: str) -> Optional[asyncio.Task]:
        return self._monitors.get(vm_id)

    def monitored_ids(self) -> List[str]:
        return list(self._monitors.keys())

    async def cancel_monitor(self, vm_id: str) -> bool:
        """Cancel a VM's monitor task and wait for it to stop."""
        task = self._monitors.pop(vm_id, None)
        if task is None:
            return False

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True
