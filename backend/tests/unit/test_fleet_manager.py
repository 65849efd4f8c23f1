"""
Unit tests for the fleet manager management surface.

Tests:
- Provision registers and monitors, failure registers nothing
- Health reporting and failure-handler invocation per tick
- Round listing and teardown
- Manual snapshot/restore and its serialisation with automatic recovery
- End-to-end automatic recovery and escalation through the monitor loop
"""

import asyncio
from typing import Optional

import pytest

from nexus.infrastructure.fleet.exceptions import (
    HypervisorError,
    ProvisionError,
    RestoreError,
    RoundNotFoundError,
    VMNotFoundError,
)
from nexus.infrastructure.fleet.models import Tier, VMStatus
from nexus.infrastructure.fleet.services.fleet_manager import FleetManager
from tests.fixtures.fleet_fixtures import (
    FakeHypervisor,
    FakeProber,
    RecordingNotifier,
    make_settings,
)


class HealingHypervisor(FakeHypervisor):
    """Reverting to a snapshot brings every service back."""

    def __init__(self, prober: FakeProber):
        super().__init__()
        self.prober = prober

    async def snapshot_revert(self, vm_id: str, name: str) -> None:
        await super().snapshot_revert(vm_id, name)
        self.prober.closed_ports.clear()
        self.prober.down_hosts.clear()


class SlowRevertHypervisor(HealingHypervisor):
    """Healing reverts that take a while; tracks how many overlap."""

    def __init__(self, prober: FakeProber, delay: float):
        super().__init__(prober)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def snapshot_revert(self, vm_id: str, name: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            await super().snapshot_revert(vm_id, name)
        finally:
            self.active -= 1


class PowerAwareProber(FakeProber):
    """A host answers only while the VM holding its address is powered on."""

    def __init__(self):
        super().__init__()
        self.hypervisor: Optional[FakeHypervisor] = None

    async def reachable(self, address: str, timeout: float) -> bool:
        up = await super().reachable(address, timeout)
        return up and any(
            reserved == address and vm_id in self.hypervisor.running
            for vm_id, reserved in self.hypervisor.reservations.items()
        )


def build_contended_fleet(revert_delay: float = 0.1):
    prober = PowerAwareProber()
    hypervisor = SlowRevertHypervisor(prober, delay=revert_delay)
    prober.hypervisor = hypervisor
    fleet = FleetManager(
        settings=make_settings(health_check_interval=0.01),
        hypervisor=hypervisor,
        prober=prober,
        notifier=RecordingNotifier(),
    )
    return fleet, hypervisor, prober


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class TestProvision:
    """Tests for FleetManager.provision."""

    @pytest.mark.asyncio
    async def test_provision_registers_and_monitors(self, fleet):
        vm = await fleet.provision(Tier.TIER1, "round-1")

        assert vm.status == VMStatus.RUNNING
        assert vm.restart_attempts == 0
        assert fleet.get_vm(vm.id) is vm
        assert fleet.registry.get_monitor(vm.id) is not None
        assert [s.name for s in fleet.list_snapshots(vm.id)] == ["baseline"]

    @pytest.mark.asyncio
    async def test_failed_provision_registers_nothing(self, fleet, prober):
        prober.closed_ports.add(("192.168.100.10", 22))

        with pytest.raises(ProvisionError) as exc_info:
            await fleet.provision(Tier.TIER1, "round-1")

        assert len(fleet.registry) == 0
        assert fleet.registry.monitored_ids() == []
        with pytest.raises(VMNotFoundError):
            fleet.get_vm(exc_info.value.vm_id)


class TestHealth:
    """Tests for health reporting."""

    @pytest.mark.asyncio
    async def test_http_down_reported_and_handled_once(self, fleet, prober, hypervisor):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        prober.closed_ports.add((vm.ip_address, 80))

        health = await fleet.get_health(vm.id)
        assert health.healthy is False
        assert "http" in health.reason

        invocations = []

        async def recording_handler(vm_id, health):
            invocations.append(vm_id)
            return await fleet.failure_handler.handle(vm_id, health)

        await fleet.health_checker.tick(vm, recording_handler)

        assert invocations == [vm.id]
        assert vm.restart_attempts == 1
        assert vm.status == VMStatus.DEGRADED
        assert len(hypervisor.called("snapshot_revert")) == 1

    @pytest.mark.asyncio
    async def test_get_health_does_not_trigger_recovery(self, fleet, prober, hypervisor):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        prober.down_hosts.add(vm.ip_address)

        health = await fleet.get_health(vm.id)

        assert health.reason == "unreachable"
        assert vm.status == VMStatus.RUNNING
        assert hypervisor.called("snapshot_revert") == []

    @pytest.mark.asyncio
    async def test_get_health_unknown_vm(self, fleet):
        with pytest.raises(VMNotFoundError):
            await fleet.get_health("nope")


class TestRounds:
    """Tests for round listing and teardown."""

    @pytest.mark.asyncio
    async def test_list_by_round(self, fleet):
        a = await fleet.provision(Tier.TIER1, "round-1")
        b = await fleet.provision(Tier.TIER2, "round-1")
        c = await fleet.provision(Tier.TIER3, "round-2")

        first = fleet.list_by_round("round-1")
        assert [vm.id for vm in first] == [a.id, b.id]
        assert [vm.id for vm in fleet.list_by_round("round-1")] == [vm.id for vm in first]
        assert [vm.id for vm in fleet.list_by_round("round-2")] == [c.id]
        assert fleet.list_by_round("round-3") == []

    @pytest.mark.asyncio
    async def test_delete_vm(self, fleet, hypervisor):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        task = fleet.registry.get_monitor(vm.id)

        await fleet.delete_vm(vm.id)

        assert task.cancelled()
        assert fleet.registry.get_monitor(vm.id) is None
        assert vm.id not in hypervisor.domains
        assert fleet.snapshot_manager.list_snapshots(vm.id) == []
        with pytest.raises(VMNotFoundError):
            fleet.get_vm(vm.id)

    @pytest.mark.asyncio
    async def test_delete_vm_unknown(self, fleet):
        with pytest.raises(VMNotFoundError):
            await fleet.delete_vm("nope")

    @pytest.mark.asyncio
    async def test_delete_vm_cleanup_errors_are_logged(self, fleet, hypervisor):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        hypervisor.fail_on["destroy_and_remove_storage"] = HypervisorError("locked")

        await fleet.delete_vm(vm.id)

        assert vm.id not in fleet.registry

    @pytest.mark.asyncio
    async def test_no_probes_after_delete(self, hypervisor, prober, notifier):
        fleet = FleetManager(
            settings=make_settings(health_check_interval=0.01),
            hypervisor=hypervisor,
            prober=prober,
            notifier=notifier,
        )
        try:
            vm = await fleet.provision(Tier.TIER1, "round-1")
            assert await wait_until(lambda: prober.calls_for(vm.ip_address) > 3)

            await fleet.delete_vm(vm.id)
            probes = prober.calls_for(vm.ip_address)
            await asyncio.sleep(0.05)

            assert prober.calls_for(vm.ip_address) == probes
        finally:
            await fleet.stop()

    @pytest.mark.asyncio
    async def test_delete_round(self, fleet):
        a = await fleet.provision(Tier.TIER1, "round-1")
        b = await fleet.provision(Tier.TIER2, "round-1")
        c = await fleet.provision(Tier.TIER3, "round-2")

        deleted = await fleet.delete_round("round-1")

        assert sorted(deleted) == sorted([a.id, b.id])
        assert fleet.list_by_round("round-1") == []
        assert fleet.get_vm(c.id) is c
        assert fleet.registry.monitored_ids() == [c.id]

    @pytest.mark.asyncio
    async def test_delete_unknown_round(self, fleet):
        with pytest.raises(RoundNotFoundError):
            await fleet.delete_round("round-9")


class TestSnapshots:
    """Tests for manual snapshot operations."""

    @pytest.mark.asyncio
    async def test_create_and_restore_named_snapshot(self, fleet, hypervisor):
        vm = await fleet.provision(Tier.TIER2, "round-1")

        record = await fleet.create_snapshot(vm.id, "pre-attack")
        restored = await fleet.restore_snapshot(vm.id, "pre-attack")

        assert record.name == "pre-attack"
        assert restored.name == "pre-attack"
        assert hypervisor.called("snapshot_revert")[-1] == ("snapshot_revert", vm.id, "pre-attack")

    @pytest.mark.asyncio
    async def test_snapshot_unknown_vm(self, fleet):
        with pytest.raises(VMNotFoundError):
            await fleet.create_snapshot("nope", "x")
        with pytest.raises(VMNotFoundError):
            await fleet.restore_snapshot("nope")

    @pytest.mark.asyncio
    async def test_manual_restore_clears_escalation(self, fleet):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        vm.status = VMStatus.UNAVAILABLE
        vm.restart_attempts = 4

        await fleet.restore_snapshot(vm.id)

        assert vm.status == VMStatus.RUNNING
        assert vm.restart_attempts == 0

    @pytest.mark.asyncio
    async def test_manual_restore_failure_propagates(self, fleet, prober):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        vm.status = VMStatus.UNAVAILABLE
        prober.down_hosts.add(vm.ip_address)

        with pytest.raises(RestoreError):
            await fleet.restore_snapshot(vm.id)

        assert vm.status == VMStatus.UNAVAILABLE


class TestManualRestoreSerialisation:
    """Operator restores and automatic recovery never act on a VM at once."""

    @pytest.mark.asyncio
    async def test_monitor_does_not_start_second_restore(self):
        fleet, hypervisor, prober = build_contended_fleet()
        try:
            vm = await fleet.provision(Tier.TIER1, "round-1")
            assert await wait_until(lambda: prober.calls_for(vm.ip_address) > 3)

            await fleet.restore_snapshot(vm.id)
            await asyncio.sleep(0.05)

            assert hypervisor.max_active == 1
            assert len(hypervisor.called("snapshot_revert")) == 1
            assert vm.status == VMStatus.RUNNING
            assert vm.restart_attempts == 0
            assert fleet.registry.get_monitor(vm.id) is not None
            assert not fleet.registry.get_monitor(vm.id).done()
        finally:
            await fleet.stop()

    @pytest.mark.asyncio
    async def test_manual_restore_waits_for_automatic_recovery(self):
        fleet, hypervisor, prober = build_contended_fleet()
        try:
            vm = await fleet.provision(Tier.TIER1, "round-1")
            prober.closed_ports.add((vm.ip_address, 80))
            assert await wait_until(lambda: hypervisor.active == 1)

            await fleet.restore_snapshot(vm.id)

            assert hypervisor.max_active == 1
            assert len(hypervisor.called("snapshot_revert")) == 2
            assert vm.status == VMStatus.RUNNING
            assert vm.restart_attempts == 0
        finally:
            await fleet.stop()

    @pytest.mark.asyncio
    async def test_failed_manual_restore_resumes_monitoring(self, fleet, prober):
        vm = await fleet.provision(Tier.TIER1, "round-1")
        prober.down_hosts.add(vm.ip_address)

        with pytest.raises(RestoreError):
            await fleet.restore_snapshot(vm.id)

        assert fleet.registry.get_monitor(vm.id) is not None
        assert not fleet.registry.lifecycle_lock(vm.id).locked()


class TestAutomaticRecovery:
    """End-to-end tests driving the real monitor loop with short intervals."""

    @pytest.mark.asyncio
    async def test_recovers_by_reverting_to_baseline(self):
        prober = FakeProber()
        hypervisor = HealingHypervisor(prober)
        notifier = RecordingNotifier()
        fleet = FleetManager(
            settings=make_settings(health_check_interval=0.01),
            hypervisor=hypervisor,
            prober=prober,
            notifier=notifier,
        )
        try:
            vm = await fleet.provision(Tier.TIER1, "round-1")
            prober.closed_ports.add((vm.ip_address, 80))

            assert await wait_until(lambda: len(hypervisor.called("snapshot_revert")) == 1)
            assert await wait_until(lambda: vm.status == VMStatus.RUNNING)
            await asyncio.sleep(0.05)

            assert vm.restart_attempts == 0
            assert vm.last_health.healthy is True
            assert len(hypervisor.called("snapshot_revert")) == 1
            assert notifier.alerts == []
        finally:
            await fleet.stop()

    @pytest.mark.asyncio
    async def test_escalates_and_keeps_reporting(self):
        hypervisor = FakeHypervisor()
        prober = FakeProber()
        notifier = RecordingNotifier()
        fleet = FleetManager(
            settings=make_settings(health_check_interval=0.01, max_restart_attempts=2),
            hypervisor=hypervisor,
            prober=prober,
            notifier=notifier,
        )
        try:
            vm = await fleet.provision(Tier.TIER1, "round-1")
            prober.down_hosts.add(vm.ip_address)

            assert await wait_until(lambda: vm.status == VMStatus.UNAVAILABLE)
            await fleet.alerts.drain()
            reverts = len(hypervisor.called("snapshot_revert"))
            checked_at = vm.last_health_check

            assert await wait_until(lambda: vm.last_health_check != checked_at)
            await fleet.alerts.drain()

            assert vm.restart_attempts == 3
            assert reverts == 2
            assert len(hypervisor.called("snapshot_revert")) == reverts
            assert len(notifier.alerts) == 1
            assert vm.last_health.reason == "unreachable"
            assert fleet.registry.get_monitor(vm.id) is not None
        finally:
            await fleet.stop()


class TestFleetIsolation:
    """Independent fleets share no state."""

    @pytest.mark.asyncio
    async def test_two_fleets(self):
        first = FleetManager(settings=make_settings(), hypervisor=FakeHypervisor(), prober=FakeProber())
        second = FleetManager(settings=make_settings(), hypervisor=FakeHypervisor(), prober=FakeProber())
        try:
            a = await first.provision(Tier.TIER1, "round-1")
            b = await second.provision(Tier.TIER1, "round-1")

            assert a.ip_address == b.ip_address == "192.168.100.10"
            assert first.list_by_round("round-1") == [a]
            assert second.list_by_round("round-1") == [b]
        finally:
            await first.stop()
            await second.stop()

    @pytest.mark.asyncio
    async def test_metrics(self, fleet):
        await fleet.provision(Tier.TIER1, "round-1")
        vm = await fleet.provision(Tier.TIER2, "round-1")
        vm.status = VMStatus.DEGRADED

        metrics = fleet.get_metrics()

        assert metrics["vms"] == 2
        assert metrics["monitored_vms"] == 2
        assert metrics["by_status"]["running"] == 1
        assert metrics["by_status"]["degraded"] == 1
        assert metrics["max_restart_attempts"] == 3

    @pytest.mark.asyncio
    async def test_stop_and_start(self, fleet):
        vm = await fleet.provision(Tier.TIER1, "round-1")

        await fleet.stop()
        assert fleet.registry.monitored_ids() == []

        await fleet.start()
        assert fleet.registry.monitored_ids() == [vm.id]
