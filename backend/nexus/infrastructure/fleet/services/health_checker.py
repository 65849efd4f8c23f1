"""
Health Checker - Periodic health validation for target VMs

Features:
- Reachability probe (ping)
- TCP port checks for every tier service
- Fixed-delay loop per VM (ticks never overlap)
- Failure callback once per unhealthy tick
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol

import structlog

from ..models import HealthStatus, ServiceSpec, VMRecord, VMStatus

logger = structlog.get_logger(__name__)


UnhealthyCallback = Callable[[str, HealthStatus], Awaitable[Any]]


class Prober(Protocol):
    async def reachable(self, address: str, timeout: float) -> bool:
        ...

    async def port_open(self, address: str, port: int, timeout: float) -> bool:
        ...


class HealthChecker:
    """
    Health checker for target VMs.

    Runs one fixed-delay loop per VM and hands unhealthy results to a
    callback. VMs in the unavailable state are still probed so their
    status stays visible, but the callback is not invoked for them.
    """

    def __init__(
        self,
        prober: Prober,
        check_interval: float = 30.0,
        timeout: float = 2.0,
    ):
        self.prober = prober
        self.check_interval = check_interval
        self.timeout = timeout

    async def check_services(
        self,
        address: str,
        services: Iterable[ServiceSpec],
    ) -> HealthStatus:
        """Probe reachability, then every service port."""
        if not await self.prober.reachable(address, self.timeout):
            return HealthStatus(
                healthy=False,
                checks={"reachable": False},
                reason="unreachable",
            )

        services = list(services)
        results = await asyncio.gather(
            *(
                self.prober.port_open(address, service.port, self.timeout)
                for service in services
            )
        )

        checks: Dict[str, bool] = {"reachable": True}
        for service, is_open in zip(services, results):
            checks[service.name] = is_open

        failed = [service.name for service, is_open in zip(services, results) if not is_open]
        if failed:
            return HealthStatus(
                healthy=False,
                checks=checks,
                reason=f"services down: {', '.join(failed)}",
            )

        return HealthStatus(healthy=True, checks=checks)

    async def check_once(self, vm: VMRecord) -> HealthStatus:
        """Perform a single health check and record it on the VM."""
        health = await self.check_services(vm.ip_address, vm.services)
        vm.record_health(health)
        return health

    async def tick(
        self,
        vm: VMRecord,
        on_unhealthy: Optional[UnhealthyCallback] = None,
    ) -> HealthStatus:
        """One monitor iteration: probe, then hand failures to the callback."""
        health = await self.check_once(vm)

        if health.healthy:
            return health

        logger.warning(
            "VM health check failed",
            vm_id=vm.id,
            reason=health.reason,
            checks=health.checks,
        )

        if vm.status == VMStatus.UNAVAILABLE or on_unhealthy is None:
            return health

        try:
            await on_unhealthy(vm.id, health)
        except Exception as e:
            logger.exception(
                "Failure handler raised",
                vm_id=vm.id,
                error=str(e),
            )

        return health

    def start(
        self,
        vm: VMRecord,
        on_unhealthy: Optional[UnhealthyCallback] = None,
    ) -> asyncio.Task:
        """Start the periodic loop for a VM and return its task."""
        return asyncio.create_task(
            self._check_loop(vm, on_unhealthy),
            name=f"health-check-{vm.id}",
        )

    async def _check_loop(
        self,
        vm: VMRecord,
        on_unhealthy: Optional[UnhealthyCallback],
    ) -> None:
        """Background loop for periodic health checks."""
        try:
            while True:
                await asyncio.sleep(self.check_interval)
                try:
                    await self.tick(vm, on_unhealthy)
                except Exception as e:
                    logger.exception(
                        "Health check tick error",
                        vm_id=vm.id,
                        error=str(e),
                    )

        except asyncio.CancelledError:
            logger.debug("Health check loop cancelled", vm_id=vm.id)
            raise

    def get_metrics(self, monitored: int) -> Dict[str, Any]:
        """Get health checker metrics."""
        return {
            "monitored_vms": monitored,
            "check_interval": self.check_interval,
            "timeout": self.timeout,
            "timestamp": datetime.utcnow().isoformat(),
        }
