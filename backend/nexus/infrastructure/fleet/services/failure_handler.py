"""
Failure Handler - Bounded snapshot recovery for unhealthy VMs

State machine (one step per unhealthy tick):

    running/degraded --attempts <= max--> degraded + restore baseline
    running/degraded --attempts >  max--> unavailable + operator alert
    unavailable      ----------------->  unavailable (no action)

A successful restore moves the VM back to running with attempts reset.
An observation made while another caller holds the VM lifecycle lock is
ignored.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog

from ..exceptions import RestoreError
from ..models import BASELINE_SNAPSHOT, HealthStatus, VMRecord, VMStatus
from .alerts import AlertDispatcher
from .registry import FleetRegistry
from .snapshot_manager import SnapshotManager

logger = structlog.get_logger(__name__)


class RecoveryAction(str, Enum):
    """What the handler must do after a transition."""
    NONE = "none"
    RESTORE = "restore"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class Transition:
    status: VMStatus
    restart_attempts: int
    action: RecoveryAction


def next_transition(
    status: VMStatus,
    restart_attempts: int,
    max_restart_attempts: int,
) -> Transition:
    """Transition taken when a VM is found unhealthy."""
    if status == VMStatus.UNAVAILABLE:
        return Transition(status, restart_attempts, RecoveryAction.NONE)

    attempts = restart_attempts + 1
    if attempts > max_restart_attempts:
        return Transition(VMStatus.UNAVAILABLE, attempts, RecoveryAction.ESCALATE)

    return Transition(VMStatus.DEGRADED, attempts, RecoveryAction.RESTORE)


def after_restore(transition: Transition, succeeded: bool) -> Transition:
    """Transition taken once a restore attempt finishes."""
    if succeeded:
        return Transition(VMStatus.RUNNING, 0, RecoveryAction.NONE)
    return Transition(VMStatus.DEGRADED, transition.restart_attempts, RecoveryAction.NONE)


class FailureHandler:
    """Applies the recovery state machine to registered VMs."""

    def __init__(
        self,
        registry: FleetRegistry,
        snapshot_manager: SnapshotManager,
        alerts: AlertDispatcher,
        max_restart_attempts: int = 3,
    ):
        self.registry = registry
        self.snapshot_manager = snapshot_manager
        self.alerts = alerts
        self.max_restart_attempts = max_restart_attempts

    async def handle(self, vm_id: str, health: Optional[HealthStatus] = None) -> Transition:
        """
        Handle one unhealthy observation of a VM.

        Args:
            vm_id: VM that failed its health check
            health: The failing health result, used for the alert reason

        Returns:
            The final transition applied to the VM
        """
        vm = self.registry.find(vm_id)
        if vm is None:
            logger.error("Cannot handle failure for unknown VM", vm_id=vm_id)
            return Transition(VMStatus.UNAVAILABLE, 0, RecoveryAction.NONE)

        lock = self.registry.lifecycle_lock(vm_id)
        if lock.locked():
            logger.info("VM busy, skipping recovery", vm_id=vm_id, status=vm.status.value)
            return Transition(vm.status, vm.restart_attempts, RecoveryAction.NONE)

        async with lock:
            return await self._recover(vm, health)

    async def _recover(self, vm: VMRecord, health: Optional[HealthStatus]) -> Transition:
        vm_id = vm.id
        reason = health.reason if health and health.reason else "health check failed"
        transition = next_transition(vm.status, vm.restart_attempts, self.max_restart_attempts)
        vm.status = transition.status
        vm.restart_attempts = transition.restart_attempts

        if transition.action == RecoveryAction.NONE:
            return transition

        if transition.action == RecoveryAction.ESCALATE:
            logger.error(
                "VM marked unavailable",
                vm_id=vm_id,
                restart_attempts=vm.restart_attempts,
                reason=reason,
            )
            self.alerts.dispatch(
                vm_id,
                f"VM cannot be recovered after {vm.restart_attempts - 1} restart attempts ({reason})",
            )
            return transition

        logger.info(
            "Attempting VM recovery",
            vm_id=vm_id,
            attempt=vm.restart_attempts,
            max_attempts=self.max_restart_attempts,
        )

        try:
            await self.snapshot_manager.restore_snapshot(vm, BASELINE_SNAPSHOT)
            succeeded = True
        except RestoreError as e:
            logger.error(
                "VM recovery failed",
                vm_id=vm_id,
                attempt=vm.restart_attempts,
                error=str(e),
            )
            succeeded = False

        final = after_restore(transition, succeeded)
        if vm_id in self.registry:
            vm.status = final.status
            vm.restart_attempts = final.restart_attempts

        if succeeded:
            logger.info("VM recovered", vm_id=vm_id)

        return final
